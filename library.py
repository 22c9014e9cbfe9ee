import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Any

from book import Book
from borrowing import BorrowingRecord
from config import settings
from student import Student
from utils.validators import LoanValidator
import seed

logger = logging.getLogger(__name__)


class DeleteOutcome(Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    IN_USE = "in_use"


class Library:
    """Owns the book, student and borrowing collections of one session.

    Every operation either applies completely or leaves state untouched.
    Unknown ids are no-ops that return None (or DeleteOutcome.NOT_FOUND);
    the only exception raised is ValueError for a borrow duration outside
    the allowed range, which callers are expected to validate first.
    """

    def __init__(self, books: Optional[Iterable[Book]] = None, students: Optional[Iterable[Student]] = None,
                 records: Optional[Iterable[BorrowingRecord]] = None,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.books: List[Book] = list(books or [])
        self.students: List[Student] = list(students or [])
        self.records: List[BorrowingRecord] = list(records or [])
        self._clock = clock

    @classmethod
    def with_seed_data(cls, clock: Callable[[], datetime] = datetime.now) -> "Library":
        return cls(
            books=seed.initial_books(),
            students=seed.initial_students(),
            records=seed.initial_borrowing_records(clock()),
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    @staticmethod
    def _placeholder_cover(seed_key: str) -> str:
        return settings.cover_image_template.format(seed=seed_key.replace("-", ""))

    # ------------------------- Books ------------------------- #
    def _new_book(self, draft: Book) -> Book:
        book = draft.copy()
        book.id = self._new_id()
        book.borrowed_by = []
        if not book.cover_image:
            book.cover_image = self._placeholder_cover(book.isbn or book.id)
        return book

    def add_book(self, draft: Book) -> Book:
        """Add a manually entered book. Always succeeds."""
        book = self._new_book(draft)
        self.books.append(book)
        logger.info(f"Book added: id={book.id} title={book.title!r} quantity={book.quantity}")
        return book

    def import_books(self, drafts: Iterable[Book]) -> List[Book]:
        """Append a batch of books in input order. Duplicate ISBNs stay separate books."""
        new_books = [self._new_book(draft) for draft in drafts]
        self.books.extend(new_books)
        logger.info(f"Imported {len(new_books)} books")
        return new_books

    def get_book(self, book_id: str) -> Optional[Book]:
        for book in self.books:
            if book.id == book_id:
                return book
        return None

    def list_books(self) -> List[Book]:
        return list(self.books)

    def update_book(self, book: Book) -> Optional[Book]:
        """Replace the stored book with the same id; None if there is none.

        The stored borrower list is kept: edits cannot change who holds a copy.
        An edit without a cover image keeps the stored one.
        """
        for index, existing in enumerate(self.books):
            if existing.id == book.id:
                updated = book.copy()
                updated.borrowed_by = list(existing.borrowed_by)
                if not updated.cover_image:
                    updated.cover_image = existing.cover_image
                self.books[index] = updated
                logger.info(f"Book updated: id={updated.id}")
                return updated
        return None

    def can_delete_book(self, book_id: str) -> bool:
        return not any(record.book_id == book_id for record in self.records)

    def delete_book(self, book_id: str) -> DeleteOutcome:
        if self.get_book(book_id) is None:
            return DeleteOutcome.NOT_FOUND
        if not self.can_delete_book(book_id):
            logger.info(f"Refused to delete book {book_id}: it has open borrowings")
            return DeleteOutcome.IN_USE
        self.books = [b for b in self.books if b.id != book_id]
        logger.info(f"Book deleted: id={book_id}")
        return DeleteOutcome.DELETED

    def search_books(self, query: str = "") -> List[Book]:
        """Case-insensitive match on title, author or ISBN."""
        q = (query or "").strip().lower()
        if not q:
            return self.list_books()
        return [b for b in self.books if q in b.title.lower() or q in b.author.lower() or q in b.isbn.lower()]

    def available_books(self, query: str = "") -> List[Book]:
        """Books that can be lent right now, matched on title or author."""
        q = (query or "").strip().lower()
        return [
            b for b in self.books
            if b.quantity > 0 and (not q or q in b.title.lower() or q in b.author.lower())
        ]

    def borrowers_of(self, book_id: str) -> List[str]:
        """Names of the students currently holding a copy, skipping unknown ids."""
        book = self.get_book(book_id)
        if not book:
            return []
        names = []
        for student_id in book.borrowed_by:
            student = self.get_student(student_id)
            if student:
                names.append(student.name)
        return names

    # ------------------------- Students ------------------------- #
    def add_student(self, draft: Student) -> Student:
        student = draft.copy()
        student.id = self._new_id()
        student.join_date = self.now()
        self.students.append(student)
        logger.info(f"Student added: id={student.id} name={student.name!r}")
        return student

    def import_students(self, drafts: Iterable[Student]) -> List[Student]:
        """Append a batch of students; join date is the import time, contact fields start empty."""
        imported_at = self.now()
        new_students = []
        for draft in drafts:
            student = draft.copy()
            student.id = self._new_id()
            student.join_date = imported_at
            student.email = ""
            student.phone = ""
            new_students.append(student)
        self.students.extend(new_students)
        logger.info(f"Imported {len(new_students)} students")
        return new_students

    def get_student(self, student_id: str) -> Optional[Student]:
        for student in self.students:
            if student.id == student_id:
                return student
        return None

    def list_students(self) -> List[Student]:
        return list(self.students)

    def update_student(self, student: Student) -> Optional[Student]:
        for index, existing in enumerate(self.students):
            if existing.id == student.id:
                updated = student.copy()
                self.students[index] = updated
                logger.info(f"Student updated: id={updated.id}")
                return updated
        return None

    def can_delete_student(self, student_id: str) -> bool:
        return not any(record.student_id == student_id for record in self.records)

    def delete_student(self, student_id: str) -> DeleteOutcome:
        if self.get_student(student_id) is None:
            return DeleteOutcome.NOT_FOUND
        if not self.can_delete_student(student_id):
            logger.info(f"Refused to delete student {student_id}: they have open borrowings")
            return DeleteOutcome.IN_USE
        self.students = [s for s in self.students if s.id != student_id]
        logger.info(f"Student deleted: id={student_id}")
        return DeleteOutcome.DELETED

    def search_students(self, query: str = "", class_name: Optional[str] = None) -> List[Student]:
        """Match on name or address, optionally restricted to one class."""
        q = (query or "").strip().lower()
        results = []
        for s in self.students:
            if q and q not in s.name.lower() and q not in s.address.lower():
                continue
            if class_name and class_name != "all" and s.class_name != class_name:
                continue
            results.append(s)
        return results

    def class_names(self) -> List[str]:
        seen: List[str] = []
        for s in self.students:
            if s.class_name and s.class_name not in seen:
                seen.append(s.class_name)
        return seen

    # ------------------------- Borrow / return ------------------------- #
    def get_record(self, record_id: str) -> Optional[BorrowingRecord]:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def list_records(self) -> List[BorrowingRecord]:
        return list(self.records)

    def borrow_book(self, book_id: str, student_id: str, duration_days: int) -> Optional[BorrowingRecord]:
        """Lend one copy of a book to a student.

        Returns None without changing anything when the book or student is
        unknown or no copy is on the shelf.
        """
        if not LoanValidator.is_valid_duration(duration_days):
            raise ValueError(LoanValidator.error_message())

        book = self.get_book(book_id)
        if book is None or self.get_student(student_id) is None:
            logger.warning(f"Borrow ignored: unknown book {book_id!r} or student {student_id!r}")
            return None
        if book.quantity <= 0:
            logger.warning(f"Borrow refused: no copies of {book_id!r} on the shelf")
            return None

        now = self.now()
        record = BorrowingRecord(
            id=self._new_id(),
            book_id=book_id,
            student_id=student_id,
            borrow_date=now,
            due_date=now + timedelta(days=duration_days),
        )
        self.records.append(record)
        book.quantity -= 1
        book.borrowed_by.append(student_id)
        logger.info(f"Borrowed: book={book_id} student={student_id} due={record.due_date.date().isoformat()}")
        return record

    def return_book(self, record_id: str) -> Optional[BorrowingRecord]:
        record = self.get_record(record_id)
        if record is None:
            return None

        self.records = [r for r in self.records if r.id != record_id]
        book = self.get_book(record.book_id)
        if book is not None:
            book.quantity += 1
            if record.student_id in book.borrowed_by:
                book.borrowed_by.remove(record.student_id)
        logger.info(f"Returned: book={record.book_id} student={record.student_id}")
        return record

    def overdue_records(self, now: Optional[datetime] = None) -> List[BorrowingRecord]:
        now = now or self.now()
        return [r for r in self.records if r.is_overdue(now)]

    def records_for_student(self, student_id: str) -> List[BorrowingRecord]:
        return [r for r in self.records if r.student_id == student_id]

    def loan_details(self, records: Optional[Iterable[BorrowingRecord]] = None,
                     now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Records joined with book title and student name; dangling records are skipped."""
        now = now or self.now()
        details = []
        for record in (self.records if records is None else records):
            book = self.get_book(record.book_id)
            student = self.get_student(record.student_id)
            if not book or not student:
                continue
            row = record.to_dict(now)
            row["book_title"] = book.title
            row["student_name"] = student.name
            row["days_overdue"] = record.days_overdue(now)
            details.append(row)
        return details

    # ------------------------- Dashboard ------------------------- #
    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.now()
        genre_counts: Counter = Counter()
        genre_order: List[str] = []
        for book in self.books:
            if book.genre not in genre_counts:
                genre_order.append(book.genre)
            genre_counts[book.genre] += book.total_copies

        recent = list(reversed(self.records[-5:]))
        return {
            "total_books": sum(b.total_copies for b in self.books),
            "borrowed_books": len(self.records),
            "overdue_books": len(self.overdue_records(now)),
            "total_students": len(self.students),
            "genres": [{"name": g, "count": genre_counts[g]} for g in genre_order],
            "recent_borrowings": self.loan_details(recent, now),
        }

    def reading_history_prompt(self, student_id: str) -> Optional[str]:
        """Recommendation request built from what a student currently has on loan."""
        student = self.get_student(student_id)
        if not student:
            return None
        titles = []
        for record in self.records_for_student(student_id):
            book = self.get_book(record.book_id)
            if book and book.title:
                titles.append(book.title)
        if titles:
            return (f"Student {student.name} has borrowed the following books: {', '.join(titles)}. "
                    "Based on that, suggest similar books or books of the same genres they may enjoy.")
        return (f"Student {student.name} is a new reader who has not borrowed any books yet. "
                "Suggest a few good, easy-to-read books across different genres to get started.")

    def consistency_errors(self) -> List[str]:
        """Disagreements between borrowing records and books' borrower lists (empty when consistent)."""
        errors = []
        expected: Counter = Counter((r.book_id, r.student_id) for r in self.records)
        actual: Counter = Counter()
        for book in self.books:
            if book.quantity < 0:
                errors.append(f"book {book.id} has negative quantity {book.quantity}")
            for student_id in book.borrowed_by:
                actual[(book.id, student_id)] += 1
        for key in expected.keys() | actual.keys():
            if expected[key] != actual[key]:
                errors.append(f"book {key[0]} / student {key[1]}: {expected[key]} records, {actual[key]} borrower entries")
        return errors
