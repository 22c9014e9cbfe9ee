import json

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from config import settings
from gemini_service import GeminiService

HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def api_module(monkeypatch, lib):
    import api as api_module
    # Fresh seeded session and an AI service with no key for every test
    monkeypatch.setattr(api_module, "library", lib)
    monkeypatch.setattr(api_module, "ai_service", GeminiService(api_key="", enabled=True))
    return api_module


@pytest.fixture
def client(api_module):
    return TestClient(api_module.app)


@pytest.fixture
def ai_reply(api_module, monkeypatch, make_gemini):
    """Answer every Gemini call with ``handler(request)``; returns the list of requests seen."""
    seen = []

    def install(handler):
        def recording(request):
            seen.append(request)
            return handler(request)
        monkeypatch.setattr(api_module, "ai_service", make_gemini(recording))
        return seen
    return install


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["total_books"] == 8
    assert body["services"]["gemini"] is False


def test_dashboard(client):
    response = client.get("/dashboard")
    assert response.status_code == 200
    stats = response.json()
    assert stats["total_books"] == 49
    assert stats["borrowed_books"] == 3
    assert stats["overdue_books"] == 1
    assert stats["total_students"] == 5
    assert stats["recent_borrowings"][0]["id"] == "record-3"


def test_get_books_and_search(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert len(response.json()) == 8

    response = client.get("/books", params={"q": "rowling"})
    books = response.json()
    assert [b["id"] for b in books] == ["book-2"]
    assert books[0]["borrowers"] == ["Trần Thị Bình"]
    assert books[0]["total_copies"] == 3


def test_get_book_not_found(client):
    assert client.get("/books/missing").status_code == 404


def test_add_book_with_valid_api_key(client, lib):
    payload = {"title": "Clean Code", "author": "Robert C. Martin", "isbn": "9780132350884", "quantity": 2}
    response = client.post("/books", headers=HEADERS, json=payload)

    assert response.status_code == 201
    book = response.json()
    assert book["id"]
    assert book["borrowed_by"] == []
    assert book["cover_image"]
    assert lib.get_book(book["id"]).title == "Clean Code"


def test_add_book_with_invalid_api_key(client):
    payload = {"title": "Clean Code", "author": "Robert C. Martin"}
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json=payload)
    assert response.status_code == 403


def test_add_book_without_api_key(client):
    response = client.post("/books", json={"title": "Clean Code", "author": "Robert C. Martin"})
    assert response.status_code in (401, 403)


def test_add_book_requires_title(client):
    response = client.post("/books", headers=HEADERS, json={"title": "", "author": "Someone"})
    assert response.status_code == 422


def test_update_book_keeps_borrowers(client):
    payload = {"title": "Dế Mèn (tái bản)", "author": "Tô Hoài", "quantity": 10}
    response = client.put("/books/book-1", headers=HEADERS, json=payload)

    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Dế Mèn (tái bản)"
    assert body["borrowed_by"] == ["student-1"]
    assert body["total_copies"] == 11


def test_update_book_without_cover_keeps_cover(client, lib):
    stored_cover = lib.get_book("book-3").cover_image

    response = client.put("/books/book-3", headers=HEADERS, json={"title": "Số Đỏ", "author": "Vũ Trọng Phụng"})

    assert response.status_code == 200
    assert response.json()["cover_image"] == stored_cover == "https://picsum.photos/seed/9786049698307/400/600"


def test_update_unknown_book(client):
    response = client.put("/books/missing", headers=HEADERS, json={"title": "X", "author": "Y"})
    assert response.status_code == 404


def test_delete_borrowed_book_is_refused(client, lib):
    response = client.delete("/books/book-1", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["detail"] == 'Cannot delete book "Dế Mèn Phiêu Lưu Ký" because it is currently borrowed.'
    assert lib.get_book("book-1") is not None


def test_delete_book(client):
    response = client.delete("/books/book-3", headers=HEADERS)
    assert response.status_code == 200
    assert client.get("/books/book-3").status_code == 404
    assert client.delete("/books/book-3", headers=HEADERS).status_code == 404


def test_students_filter_and_classes(client):
    response = client.get("/students", params={"class_name": "7A2"})
    assert [s["id"] for s in response.json()] == ["student-2", "student-5"]
    assert client.get("/students/classes").json() == ["8A1", "7A2", "9B1", "8A3"]


def test_add_and_update_student(client, fixed_now):
    response = client.post("/students", headers=HEADERS, json={"name": "Đỗ Văn Khoa", "class_name": "6A1", "grade": "6"})
    assert response.status_code == 201
    student = response.json()
    assert student["join_date"] == fixed_now.isoformat()

    response = client.put(f"/students/{student['id']}", headers=HEADERS,
                          json={"name": "Đỗ Văn Khoa", "class_name": "6A2", "grade": "6"})
    assert response.status_code == 200
    assert response.json()["class_name"] == "6A2"
    assert response.json()["join_date"] == fixed_now.isoformat()


def test_delete_student_with_loans_is_refused(client):
    response = client.delete("/students/student-1", headers=HEADERS)
    assert response.status_code == 409
    assert "still have borrowed books" in response.json()["detail"]

    assert client.delete("/students/student-4", headers=HEADERS).status_code == 200


def test_borrow_and_return(client, lib):
    response = client.post("/borrowings", headers=HEADERS,
                           json={"book_id": "book-3", "student_id": "student-3", "duration_days": 30})
    assert response.status_code == 201
    loan = response.json()
    assert loan["book_title"] == "Số Đỏ"
    assert loan["student_name"] == "Lê Hoàng Cường"
    assert loan["due_date"].startswith("2024-06-19")
    assert lib.get_book("book-3").quantity == 4

    response = client.post(f"/borrowings/{loan['id']}/return", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["id"] == loan["id"]
    assert lib.get_book("book-3").quantity == 5
    assert lib.get_book("book-3").borrowed_by == []
    assert lib.consistency_errors() == []


def test_borrow_uses_default_duration(client):
    response = client.post("/borrowings", headers=HEADERS, json={"book_id": "book-4", "student_id": "student-4"})
    assert response.status_code == 201
    assert response.json()["due_date"].startswith("2024-06-03")


@pytest.mark.parametrize("days", [0, 731])
def test_borrow_duration_out_of_range(client, lib, days):
    response = client.post("/borrowings", headers=HEADERS,
                           json={"book_id": "book-3", "student_id": "student-3", "duration_days": days})
    assert response.status_code == 422
    assert len(lib.list_records()) == 3


def test_borrow_with_no_copies(client, lib):
    lib.get_book("book-3").quantity = 0
    response = client.post("/borrowings", headers=HEADERS, json={"book_id": "book-3", "student_id": "student-3"})
    assert response.status_code == 409
    assert response.json()["detail"] == 'No copies of "Số Đỏ" are available.'


def test_borrow_unknown_ids(client):
    assert client.post("/borrowings", headers=HEADERS,
                       json={"book_id": "nope", "student_id": "student-3"}).status_code == 404
    assert client.post("/borrowings", headers=HEADERS,
                       json={"book_id": "book-3", "student_id": "nope"}).status_code == 404


def test_return_unknown_record(client):
    assert client.post("/borrowings/nope/return", headers=HEADERS).status_code == 404


def test_list_overdue_borrowings(client):
    rows = client.get("/borrowings", params={"overdue": "true"}).json()
    assert [r["id"] for r in rows] == ["record-2"]
    assert rows[0]["days_overdue"] == 6
    assert len(client.get("/borrowings").json()) == 3


def test_ai_endpoints_without_key_return_503(client):
    assert client.post("/books/lookup", json={"isbn": "123"}).status_code == 503
    response = client.post("/assistant/recommendations", json={"query": "space"})
    assert response.status_code == 503


def test_lookup_book(client, ai_reply, gemini_reply):
    seen = ai_reply(lambda request: gemini_reply(
        {"title": "Clean Code", "author": "Robert C. Martin", "description": "Craft.", "genre": "Tech"}))

    response = client.post("/books/lookup", json={"isbn": " 978-0132350884 "})

    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Clean Code"
    assert body["isbn"] == "9780132350884"
    assert body["isbn_valid"] is True
    assert body["cover_image"].endswith("/seed/9780132350884/400/600")
    prompt = json.loads(seen[0].content)["contents"][0]["parts"][0]["text"]
    assert '"9780132350884"' in prompt


def test_lookup_book_with_bad_checksum_still_runs(client, ai_reply, gemini_reply):
    ai_reply(lambda request: gemini_reply(
        {"title": "Unknown", "author": "Unknown", "description": "", "genre": ""}))

    response = client.post("/books/lookup", json={"isbn": "978-0-13-235088-5"})

    assert response.status_code == 200
    assert response.json()["isbn_valid"] is False


def test_lookup_book_without_digits_is_400(client, ai_reply):
    seen = ai_reply(lambda request: httpx.Response(500))

    response = client.post("/books/lookup", json={"isbn": "---"})

    assert response.status_code == 400
    assert seen == []


def test_lookup_book_failure_is_502(client, ai_reply):
    ai_reply(lambda request: httpx.Response(500, text="boom"))

    response = client.post("/books/lookup", json={"isbn": "123"})

    assert response.status_code == 502
    assert response.json()["detail"] == "Could not retrieve book details. Please try again."


def test_recommendations_for_student_use_reading_history(client, ai_reply, gemini_reply):
    recs = {"recommendations": [{"title": "Kính Vạn Hoa", "author": "Nguyễn Nhật Ánh", "reason": "Fun"}]}
    seen = ai_reply(lambda request: gemini_reply(recs))

    response = client.post("/assistant/recommendations", json={"student_id": "student-1"})

    assert response.status_code == 200
    assert response.json()["recommendations"][0]["title"] == "Kính Vạn Hoa"
    prompt = json.loads(seen[0].content)["contents"][0]["parts"][0]["text"]
    assert "Dế Mèn Phiêu Lưu Ký" in prompt


def test_recommendations_input_errors(client):
    assert client.post("/assistant/recommendations", json={}).status_code == 400
    assert client.post("/assistant/recommendations", json={"query": "   "}).status_code == 400
    assert client.post("/assistant/recommendations", json={"student_id": "nope"}).status_code == 404


def test_import_books_from_csv(client, lib, ai_reply, gemini_reply):
    rows = [{"title": "Refactoring", "author": "Martin Fowler", "isbn": "", "genre": "Tech", "description": "",
             "quantity": 3}]
    ai_reply(lambda request: gemini_reply(rows))

    response = client.post("/books/import", headers={**HEADERS, "X-Filename": "books.csv"},
                           content="title,author\nRefactoring,Martin Fowler\n".encode("utf-8"))

    assert response.status_code == 200
    body = response.json()
    assert body["imported"] == 1
    assert body["discarded"] is False
    assert lib.get_book(body["ids"][0]).title == "Refactoring"


def test_import_books_ai_failure_adds_nothing(client, lib, ai_reply):
    ai_reply(lambda request: httpx.Response(200, json={"candidates": []}))

    response = client.post("/books/import", headers={**HEADERS, "X-Filename": "books.csv"}, content=b"title\nX\n")

    assert response.status_code == 502
    assert len(lib.list_books()) == 8


def test_import_empty_file_is_400(client, ai_reply):
    seen = ai_reply(lambda request: httpx.Response(500))

    response = client.post("/students/import", headers={**HEADERS, "X-Filename": "class.xlsx"}, content=b"")

    assert response.status_code == 400
    assert seen == []


def test_import_students_from_image(client, lib, ai_reply, gemini_reply, fixed_now):
    rows = [{"name": "Vũ Thị Lan", "birth_date": "01/02/2011", "gender": "Nữ", "grade": "7",
             "class_name": "7A1", "ethnicity": "Kinh", "address": "Hà Nội"}]
    ai_reply(lambda request: gemini_reply(rows))

    response = client.post("/students/import/image", headers={**HEADERS, "Content-Type": "image/png"},
                           content=b"\x89PNG fake")

    assert response.status_code == 200
    student = lib.get_student(response.json()["ids"][0])
    assert student.name == "Vũ Thị Lan"
    assert student.join_date == fixed_now
    assert student.email == ""


def test_import_students_image_rejects_other_types(client, ai_reply):
    ai_reply(lambda request: httpx.Response(500))

    response = client.post("/students/import/image", headers={**HEADERS, "Content-Type": "text/plain"},
                           content=b"hello")

    assert response.status_code == 400


def test_api_usage(client, ai_reply, gemini_reply):
    ai_reply(lambda request: gemini_reply({"recommendations": []}))
    client.post("/assistant/recommendations", json={"query": "poetry"})

    usage = client.get("/admin/api-usage").json()["gemini"]
    assert usage["total_requests"] == 1
    assert usage["operations"]["recommendations"]["requests"] == 1


@pytest.fixture
def client_gone(monkeypatch):
    """Requests report the client as disconnected once extraction finishes"""
    async def disconnected(self):
        return True
    monkeypatch.setattr(Request, "is_disconnected", disconnected)


def test_import_books_discarded_when_client_left(client, lib, ai_reply, gemini_reply, client_gone):
    rows = [{"title": "Refactoring", "author": "Martin Fowler", "isbn": "", "genre": "Tech", "description": "",
             "quantity": 3}]
    seen = ai_reply(lambda request: gemini_reply(rows))

    response = client.post("/books/import", headers={**HEADERS, "X-Filename": "books.csv"},
                           content=b"title,author\nRefactoring,Martin Fowler\n")

    assert response.status_code == 200
    assert response.json() == {"imported": 0, "discarded": True, "ids": []}
    assert len(seen) == 1
    assert len(lib.list_books()) == 8


def test_import_students_discarded_when_client_left(client, lib, ai_reply, gemini_reply, client_gone):
    rows = [{"name": "Vũ Thị Lan", "birth_date": "01/02/2011", "gender": "Nữ", "grade": "7",
             "class_name": "7A1", "ethnicity": "Kinh", "address": "Hà Nội"}]
    ai_reply(lambda request: gemini_reply(rows))

    spreadsheet = client.post("/students/import", headers={**HEADERS, "X-Filename": "class.csv"},
                              content="name\nVũ Thị Lan\n".encode("utf-8"))
    image = client.post("/students/import/image", headers={**HEADERS, "Content-Type": "image/png"},
                        content=b"\x89PNG fake")

    assert spreadsheet.json()["discarded"] is True
    assert image.json()["discarded"] is True
    assert len(lib.list_students()) == 5
