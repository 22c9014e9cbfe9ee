from __future__ import annotations

from datetime import datetime


class BorrowingRecord:
    """One copy of a book held by one student.

    A record exists exactly as long as the student's id sits in the book's
    ``borrowed_by`` list; both are created and removed together by
    ``Library.borrow_book`` / ``Library.return_book``.
    """

    def __init__(self, id: str, book_id: str, student_id: str, borrow_date: datetime, due_date: datetime) -> None:
        self.id = id
        self.book_id = book_id
        self.student_id = student_id
        self.borrow_date = borrow_date
        self.due_date = due_date

    def __repr__(self) -> str:  # pragma: no cover
        return f"BorrowingRecord(id={self.id!r}, book_id={self.book_id!r}, student_id={self.student_id!r})"

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        return self.due_date < now

    def days_overdue(self, now: datetime | None = None) -> int:
        now = now or datetime.now()
        if not self.is_overdue(now):
            return 0
        return (now - self.due_date).days

    @property
    def duration_days(self) -> int:
        return (self.due_date - self.borrow_date).days

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "student_id": self.student_id,
            "borrow_date": self.borrow_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "overdue": self.is_overdue(now),
        }

    @staticmethod
    def from_dict(data: dict) -> "BorrowingRecord":
        borrow_date = data["borrow_date"]
        due_date = data["due_date"]
        return BorrowingRecord(
            id=data["id"],
            book_id=data["book_id"],
            student_id=data["student_id"],
            borrow_date=datetime.fromisoformat(borrow_date) if isinstance(borrow_date, str) else borrow_date,
            due_date=datetime.fromisoformat(due_date) if isinstance(due_date, str) else due_date,
        )
