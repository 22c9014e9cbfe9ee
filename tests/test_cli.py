import json
from unittest.mock import patch

import httpx
import pytest
from typer.testing import CliRunner

from main import app, LibraryManager

runner = CliRunner()


@pytest.fixture(autouse=True)
def session(monkeypatch, lib, make_gemini):
    # Seeded library and an AI service without a key unless a test installs one
    monkeypatch.setattr(LibraryManager, "_instance", lib)
    monkeypatch.setattr(LibraryManager, "_ai_service", make_gemini(lambda request: httpx.Response(500), api_key=""))
    return lib


@pytest.fixture
def ai_reply(monkeypatch, make_gemini):
    def install(handler):
        monkeypatch.setattr(LibraryManager, "_ai_service", make_gemini(handler))
    return install


def test_dashboard():
    result = runner.invoke(app, ["dashboard"])
    assert result.exit_code == 0
    assert "Total Books: 49" in result.stdout
    assert "Overdue Books: 1" in result.stdout
    assert "Recent borrowings:" in result.stdout


def test_books_lists_shelf_and_total():
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "book-1 - Dế Mèn Phiêu Lưu Ký by Tô Hoài [4/5]" in result.stdout


def test_books_json_output():
    result = runner.invoke(app, ["--output", "json", "books", "conan"])
    assert result.exit_code == 0
    books = json.loads(result.stdout)
    assert [b["id"] for b in books] == ["book-6"]
    assert books[0]["borrowers"] == ["Nguyễn Văn An"]


def test_list_no_books(session):
    session.books = []
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_students_by_class():
    result = runner.invoke(app, ["students", "--class", "9B1"])
    assert result.exit_code == 0
    assert "student-3 - Lê Hoàng Cường (9B1)" in result.stdout
    assert "student-1" not in result.stdout


def test_loans_overdue():
    result = runner.invoke(app, ["loans", "--overdue"])
    assert result.exit_code == 0
    assert "record-2 - Harry Potter và Hòn Đá Phù Thủy -> Trần Thị Bình" in result.stdout
    assert "OVERDUE" in result.stdout
    assert "record-1" not in result.stdout


def test_borrow_success(session):
    result = runner.invoke(app, ["borrow", "book-3", "student-3", "--days", "14"])
    assert result.exit_code == 0
    assert "Borrowed: Số Đỏ -> Lê Hoàng Cường, due 2024-06-03" in result.stdout
    assert session.get_book("book-3").borrowed_by == ["student-3"]


def test_borrow_invalid_duration(session):
    result = runner.invoke(app, ["borrow", "book-3", "student-3", "--days", "0"])
    assert result.exit_code == 0
    assert "Error: Borrow duration must be between 1 and 730 days." in result.stdout
    assert len(session.list_records()) == 3


def test_borrow_unknown_and_unavailable(session):
    assert "Book nope not found." in runner.invoke(app, ["borrow", "nope", "student-3"]).stdout
    assert "Student nope not found." in runner.invoke(app, ["borrow", "book-3", "nope"]).stdout

    session.get_book("book-3").quantity = 0
    result = runner.invoke(app, ["borrow", "book-3", "student-3"])
    assert 'No copies of "Số Đỏ" are available.' in result.stdout


def test_return(session):
    result = runner.invoke(app, ["return", "record-2"])
    assert result.exit_code == 0
    assert "Returned: Harry Potter và Hòn Đá Phù Thủy" in result.stdout
    assert session.get_book("book-2").quantity == 3

    result = runner.invoke(app, ["return", "record-2"])
    assert "Borrowing record record-2 not found." in result.stdout


def test_delete_borrowed_book_is_refused(session):
    result = runner.invoke(app, ["delete-book", "book-1", "--yes"])
    assert result.exit_code == 0
    assert 'Cannot delete book "Dế Mèn Phiêu Lưu Ký" because it is currently borrowed.' in result.stdout
    assert session.get_book("book-1") is not None


def test_delete_book(session):
    result = runner.invoke(app, ["delete-book", "book-3", "--yes"])
    assert "Book book-3 has been deleted." in result.stdout
    assert session.get_book("book-3") is None

    result = runner.invoke(app, ["delete-book", "book-3", "--yes"])
    assert "Book book-3 not found." in result.stdout


def test_delete_student_needs_confirmation(session):
    result = runner.invoke(app, ["delete-student", "student-4"], input="n\n")
    assert "Cancelled." in result.stdout
    assert session.get_student("student-4") is not None


def test_lookup(ai_reply, gemini_reply):
    ai_reply(lambda request: gemini_reply(
        {"title": "Clean Code", "author": "Robert C. Martin", "description": "Craft.", "genre": "Tech"}))

    result = runner.invoke(app, ["lookup", "9780132350884"])

    assert result.exit_code == 0
    assert "Title: Clean Code" in result.stdout
    assert "Author: Robert C. Martin" in result.stdout


def test_lookup_failure(ai_reply):
    ai_reply(lambda request: httpx.Response(500, text="boom"))

    result = runner.invoke(app, ["lookup", "123"])

    assert result.exit_code == 0
    assert "Error: Could not retrieve book details. Please try again." in result.stdout


def test_lookup_without_key():
    result = runner.invoke(app, ["lookup", "123"])
    assert result.exit_code == 0
    assert "Error: AI features are not configured." in result.stdout


def test_recommend(ai_reply, gemini_reply):
    recs = {"recommendations": [{"title": "Kính Vạn Hoa", "author": "Nguyễn Nhật Ánh", "reason": "Fun stories"}]}
    ai_reply(lambda request: gemini_reply(recs))

    result = runner.invoke(app, ["recommend", "--student", "student-4"])

    assert result.exit_code == 0
    assert "1. Kính Vạn Hoa by Nguyễn Nhật Ánh" in result.stdout
    assert "Fun stories" in result.stdout


def test_recommend_needs_input():
    result = runner.invoke(app, ["recommend"])
    assert "Select a student or enter a request." in result.stdout


def test_import_books(session, tmp_path, ai_reply, gemini_reply):
    rows = [{"title": f"Book {i}", "author": "A", "isbn": "", "genre": "G", "description": "", "quantity": 1}
            for i in range(2)]
    ai_reply(lambda request: gemini_reply(rows))
    path = tmp_path / "books.csv"
    path.write_text("title,author\nBook 0,A\nBook 1,A\n", encoding="utf-8")

    result = runner.invoke(app, ["import-books", str(path)])

    assert result.exit_code == 0
    assert "Imported 2 books." in result.stdout
    assert len(session.list_books()) == 10


def test_import_students_failure(session, tmp_path, ai_reply):
    ai_reply(lambda request: httpx.Response(500))
    path = tmp_path / "class.csv"
    path.write_text("name\nAn\n", encoding="utf-8")

    result = runner.invoke(app, ["import-students", str(path)])

    assert "Import failed: Could not extract data from the spreadsheet." in result.stdout
    assert len(session.list_students()) == 5


def test_import_missing_file(tmp_path):
    result = runner.invoke(app, ["import-books", str(tmp_path / "nope.xlsx")])
    assert "File not found:" in result.stdout


@patch('subprocess.run')
@patch('webbrowser.open')
def test_serve_command(mock_webbrowser_open, mock_subprocess_run):
    result = runner.invoke(app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on http://" in result.stdout
    mock_webbrowser_open.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert args[1:4] == ["-m", "uvicorn", "api:app"]
    assert "8123" in args


def test_lookup_normalizes_isbn(monkeypatch, make_gemini, gemini_reply):
    prompts = []

    def handler(request):
        prompts.append(json.loads(request.content)["contents"][0]["parts"][0]["text"])
        return gemini_reply({"title": "Số Đỏ", "author": "Vũ Trọng Phụng", "description": "", "genre": ""})
    monkeypatch.setattr(LibraryManager, "_ai_service", make_gemini(handler))

    result = runner.invoke(app, ["lookup", "978-604-9-69830-7"])

    assert "ISBN: 9786049698307" in result.stdout
    assert "Warning" not in result.stdout
    assert '"9786049698307"' in prompts[0]


def test_lookup_warns_on_bad_checksum(ai_reply, gemini_reply):
    ai_reply(lambda request: gemini_reply({"title": "X", "author": "Y", "description": "", "genre": ""}))

    result = runner.invoke(app, ["lookup", "978-0-13-235088-5"])

    assert "Warning: 9780132350885 is not a valid ISBN-10/13" in result.stdout
    assert "Title: X" in result.stdout


def test_lookup_rejects_empty_isbn():
    result = runner.invoke(app, ["lookup", "--", "---"])
    assert "Error: Enter an ISBN." in result.stdout
