"""Initial collections loaded when a session starts.

Every call builds fresh objects so sessions never share mutable state.
Books already on loan carry their borrower in ``borrowed_by`` with a
matching record below; their shelf quantity is total copies minus loans.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List

from book import Book
from borrowing import BorrowingRecord
from config import settings
from student import Student

STUDENT_1 = "student-1"
STUDENT_2 = "student-2"
STUDENT_3 = "student-3"
STUDENT_4 = "student-4"
STUDENT_5 = "student-5"

BOOK_1 = "book-1"
BOOK_2 = "book-2"
BOOK_3 = "book-3"
BOOK_4 = "book-4"
BOOK_5 = "book-5"
BOOK_6 = "book-6"
BOOK_7 = "book-7"
BOOK_8 = "book-8"

_STUDENTS = [
    (STUDENT_1, "Nguyễn Văn An", "an.nguyen@example.com", "0901234567", "2023-09-01", "15/05/2010", "Nam", "8", "8A1",
     "Kinh", "123 Đường ABC, Quận 1, TP. HCM"),
    (STUDENT_2, "Trần Thị Bình", "binh.tran@example.com", "0912345678", "2023-09-01", "20/08/2011", "Nữ", "7", "7A2",
     "Kinh", "456 Đường XYZ, Quận 3, TP. HCM"),
    (STUDENT_3, "Lê Hoàng Cường", "cuong.le@example.com", "0987654321", "2024-01-10", "10/11/2009", "Nam", "9", "9B1",
     "Kinh", "789 Đường DEF, Quận Gò Vấp, TP. HCM"),
    (STUDENT_4, "Phạm Thúy Duyên", "duyen.pham@example.com", "0978123456", "2024-02-20", "25/02/2010", "Nữ", "8", "8A3",
     "Kinh", "101 Đường GHI, Quận Bình Thạnh, TP. HCM"),
    (STUDENT_5, "Hoàng Minh Hải", "hai.hoang@example.com", "0965432109", "2024-03-15", "30/07/2011", "Nam", "7", "7A2",
     "Kinh", "212 Đường KLM, Quận 10, TP. HCM"),
]

# (id, title, author, isbn, genre, description, shelf quantity, borrowers)
_BOOKS = [
    (BOOK_1, "Dế Mèn Phiêu Lưu Ký", "Tô Hoài", "978-604-2-05996-8", "Thiếu nhi",
     "Cuộc phiêu lưu của chú Dế Mèn qua thế giới loài vật và những bài học đường đời sâu sắc.", 4, [STUDENT_1]),
    (BOOK_2, "Harry Potter và Hòn Đá Phù Thủy", "J.K. Rowling", "978-604-1-19766-9", "Giả tưởng",
     "Tập đầu tiên trong series truyện về cậu bé phù thủy Harry Potter và những cuộc phiêu lưu tại trường Hogwarts.",
     2, [STUDENT_2]),
    (BOOK_3, "Số Đỏ", "Vũ Trọng Phụng", "978-604-9-69830-7", "Văn học Việt Nam",
     "Một tác phẩm châm biếm sâu cay về xã hội Việt Nam thời Pháp thuộc qua nhân vật Xuân Tóc Đỏ.", 5, []),
    (BOOK_4, "Nhà Giả Kim", "Paulo Coelho", "978-604-3-46387-9", "Tiểu thuyết",
     "Hành trình đi tìm kho báu của cậu bé chăn cừu Santiago, một câu chuyện đầy triết lý về việc theo đuổi ước mơ.",
     6, []),
    (BOOK_5, "Lược Sử Loài Người", "Yuval Noah Harari", "978-604-3-45579-9", "Khoa học",
     "Cuốn sách kể về toàn bộ lịch sử của loài người, từ thời kỳ đồ đá cho đến cuộc cách mạng công nghệ.", 3, []),
    (BOOK_6, "Conan - Tập 1", "Aoyama Gosho", "978-604-2-21111-3", "Trinh thám",
     "Cậu thám tử trung học Kudo Shinichi bị teo nhỏ và phá các vụ án dưới thân phận Edogawa Conan.", 9, [STUDENT_1]),
    (BOOK_7, "Tôi Thấy Hoa Vàng Trên Cỏ Xanh", "Nguyễn Nhật Ánh", "978-604-2-16223-1", "Thiếu nhi",
     "Câu chuyện tuổi thơ trong sáng, hồn nhiên ở một làng quê nghèo Việt Nam những năm cuối 1980.", 7, []),
    (BOOK_8, "Đắc Nhân Tâm", "Dale Carnegie", "978-604-5-88697-3", "Kỹ năng sống",
     "Cuốn sách self-help kinh điển về nghệ thuật giao tiếp, ứng xử và thu phục lòng người.", 10, []),
]

# (id, book, student, borrowed days ago, due in days; negative means overdue)
_RECORDS = [
    ("record-1", BOOK_1, STUDENT_1, 10, 4),
    ("record-2", BOOK_2, STUDENT_2, 20, -6),
    ("record-3", BOOK_6, STUDENT_1, 2, 12),
]


def cover_for(isbn: str) -> str:
    return settings.cover_image_template.format(seed=isbn.replace("-", ""))


def initial_students() -> List[Student]:
    return [
        Student(id=sid, name=name, email=email, phone=phone, join_date=datetime.fromisoformat(joined),
                birth_date=born, gender=gender, grade=grade, class_name=class_name, ethnicity=ethnicity,
                address=address)
        for sid, name, email, phone, joined, born, gender, grade, class_name, ethnicity, address in _STUDENTS
    ]


def initial_books() -> List[Book]:
    return [
        Book(id=bid, title=title, author=author, isbn=isbn, genre=genre, description=description,
             quantity=quantity, cover_image=cover_for(isbn), borrowed_by=list(borrowers))
        for bid, title, author, isbn, genre, description, quantity, borrowers in _BOOKS
    ]


def initial_borrowing_records(now: datetime | None = None) -> List[BorrowingRecord]:
    now = now or datetime.now()
    return [
        BorrowingRecord(id=rid, book_id=book_id, student_id=student_id,
                        borrow_date=now - timedelta(days=ago), due_date=now + timedelta(days=due))
        for rid, book_id, student_id, ago, due in _RECORDS
    ]
