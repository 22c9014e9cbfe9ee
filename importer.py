"""Bulk import: spreadsheet or photo in, AI extraction, then Library.import_*.

Nothing reaches the library unless extraction succeeded for the whole file.
"""
import io
import logging
import os
from typing import List

import pandas as pd

from book import Book
from config import settings
from gemini_service import BookDraft, GeminiService, RecordKind, StudentDraft
from student import Student

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = (".csv", ".txt")


class ImportFileError(Exception):
    """The uploaded file could not be read"""
    pass


def spreadsheet_to_csv(data: bytes, filename: str = "") -> str:
    """Render the first sheet of a workbook (or a CSV file as-is) to CSV text."""
    if not data:
        raise ImportFileError("The file is empty.")

    ext = os.path.splitext(filename or "")[1].lower()
    if ext and ext not in settings.spreadsheet_extensions:
        raise ImportFileError(f"Unsupported file type {ext!r}; use one of {', '.join(settings.spreadsheet_extensions)}.")
    if ext in TEXT_EXTENSIONS:
        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ImportFileError("Could not read the file: it is not UTF-8 text.") from exc

    try:
        frame = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=str)
    except ImportError as exc:
        # pandas reports a missing Excel engine (xlrd / openpyxl) this way
        logger.error(f"No reader installed for {ext or 'spreadsheet'} files: {exc}")
        raise ImportFileError(f"Reading {ext or 'this'} files is not supported by this installation.") from exc
    except Exception as exc:
        logger.warning(f"Could not parse spreadsheet {filename!r}: {exc}")
        raise ImportFileError("Could not read the spreadsheet file.") from exc
    frame = frame.dropna(how="all")
    return frame.to_csv(index=False, header=False)


def book_from_draft(draft: BookDraft) -> Book:
    return Book(
        title=draft.title,
        author=draft.author,
        isbn=draft.isbn,
        genre=draft.genre,
        description=draft.description,
        quantity=draft.quantity,
    )


def student_from_draft(draft: StudentDraft) -> Student:
    return Student(
        name=draft.name,
        birth_date=draft.birth_date,
        gender=draft.gender,
        grade=draft.grade,
        class_name=draft.class_name,
        ethnicity=draft.ethnicity,
        address=draft.address,
    )


async def extract_books_from_spreadsheet(service: GeminiService, data: bytes, filename: str = "") -> List[Book]:
    csv_text = spreadsheet_to_csv(data, filename)
    drafts = await service.extract_records_from_csv(csv_text, RecordKind.BOOKS)
    return [book_from_draft(d) for d in drafts]


async def extract_students_from_spreadsheet(service: GeminiService, data: bytes, filename: str = "") -> List[Student]:
    csv_text = spreadsheet_to_csv(data, filename)
    drafts = await service.extract_records_from_csv(csv_text, RecordKind.STUDENTS)
    return [student_from_draft(d) for d in drafts]


async def extract_students_from_image(service: GeminiService, data: bytes, mime_type: str) -> List[Student]:
    mime_type = (mime_type or "").split(";")[0].strip().lower()
    if not mime_type.startswith("image/"):
        raise ImportFileError(f"Unsupported file type {mime_type or 'unknown'!r}; upload an image.")
    if not data:
        raise ImportFileError("The file is empty.")
    drafts = await service.extract_students_from_image(data, mime_type)
    return [student_from_draft(d) for d in drafts]


async def import_books_from_spreadsheet(library, service: GeminiService, data: bytes, filename: str = "") -> List[Book]:
    books = await extract_books_from_spreadsheet(service, data, filename)
    logger.info(f"Extracted {len(books)} books from {filename or 'spreadsheet'}")
    return library.import_books(books)


async def import_students_from_spreadsheet(library, service: GeminiService, data: bytes,
                                           filename: str = "") -> List[Student]:
    students = await extract_students_from_spreadsheet(service, data, filename)
    logger.info(f"Extracted {len(students)} students from {filename or 'spreadsheet'}")
    return library.import_students(students)


async def import_students_from_image(library, service: GeminiService, data: bytes, mime_type: str) -> List[Student]:
    students = await extract_students_from_image(service, data, mime_type)
    logger.info(f"Extracted {len(students)} students from image")
    return library.import_students(students)
