import logging
from datetime import datetime
from typing import List, Optional, Dict, Any
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Depends, Security, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

import importer
from book import Book
from config import settings
from gemini_service import AIServiceError, AIServiceUnavailable, GeminiService
from http_client import cleanup_http_client
from importer import ImportFileError
from library import Library, DeleteOutcome
from student import Student
from utils.validators import ISBNValidator
from views import EntityKind, ErrorDialog, delete_dialog

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# One session per process: state lives only as long as the server runs
library = Library.with_seed_data() if settings.seed_on_startup else Library()
ai_service = GeminiService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        await cleanup_http_client()

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
# Guards mutating endpoints against accidental calls; not user authentication.
api_key_header = APIKeyHeader(name="X-API-Key")

def get_api_key(api_key: str = Security(api_key_header)):
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )

# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    isbn: str
    genre: str
    description: str
    quantity: int
    cover_image: str
    borrowed_by: List[str]
    total_copies: int
    borrowers: List[str] = []

class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = ""
    genre: str = ""
    description: str = ""
    quantity: int = Field(default=1, ge=0)
    cover_image: str = ""

class StudentModel(BaseModel):
    id: str
    name: str
    email: str
    phone: str
    join_date: str | None = None
    birth_date: str
    gender: str
    grade: str
    class_name: str
    ethnicity: str
    address: str

class StudentCreateModel(BaseModel):
    name: str = Field(min_length=1)
    email: str = ""
    phone: str = ""
    birth_date: str = ""
    gender: str = ""
    grade: str = ""
    class_name: str = ""
    ethnicity: str = ""
    address: str = ""

class LoanModel(BaseModel):
    id: str
    book_id: str
    student_id: str
    borrow_date: str
    due_date: str
    overdue: bool
    days_overdue: int
    book_title: str = ""
    student_name: str = ""

class BorrowRequest(BaseModel):
    book_id: str
    student_id: str
    duration_days: int = Field(default=settings.default_loan_days, ge=settings.min_loan_days,
                               le=settings.max_loan_days)

class GenreCount(BaseModel):
    name: str
    count: int

class StatsModel(BaseModel):
    total_books: int
    borrowed_books: int
    overdue_books: int
    total_students: int
    genres: List[GenreCount]
    recent_borrowings: List[LoanModel]

class LookupRequest(BaseModel):
    isbn: str = Field(min_length=1)

class LookupResponse(BaseModel):
    isbn: str
    isbn_valid: bool
    title: str
    author: str
    description: str
    genre: str
    cover_image: str

class RecommendationRequest(BaseModel):
    student_id: Optional[str] = None
    query: Optional[str] = None

class RecommendationModel(BaseModel):
    title: str
    author: str
    reason: str

class RecommendationResponse(BaseModel):
    prompt: str
    recommendations: List[RecommendationModel]

class ImportResponse(BaseModel):
    imported: int
    discarded: bool = False
    ids: List[str] = []

# --- Helpers ---
def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict(), total_copies=book.total_copies, borrowers=library.borrowers_of(book.id))

def _student_model(student: Student) -> StudentModel:
    return StudentModel(**student.to_dict())

def _require_ai() -> GeminiService:
    if not ai_service.is_available():
        raise HTTPException(status_code=503, detail="AI features are not configured.")
    return ai_service

async def _await_ai(awaitable):
    """Await a gateway/import call, mapping its failures to HTTP errors."""
    try:
        return await awaitable
    except ImportFileError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AIServiceUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except AIServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))

async def _read_upload(request: Request) -> bytes:
    data = await request.body()
    if len(data) > settings.max_upload_size:
        raise HTTPException(status_code=413, detail="File is too large.")
    return data

def _delete(kind: EntityKind, entity_id: str) -> Dict[str, str]:
    dialog = delete_dialog(library, kind, entity_id)
    if dialog is None:
        raise HTTPException(status_code=404, detail=f"{kind.value.title()} not found.")
    if isinstance(dialog, ErrorDialog):
        raise HTTPException(status_code=409, detail=dialog.message)
    if kind is EntityKind.BOOK:
        outcome = library.delete_book(entity_id)
    else:
        outcome = library.delete_student(entity_id)
    if outcome is not DeleteOutcome.DELETED:
        raise HTTPException(status_code=409, detail=f"{kind.value.title()} could not be deleted.")
    return {"message": f"{kind.value.title()} deleted."}

# --- Health ---
@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "total_books": len(library.books),
        "total_students": len(library.students),
        "services": {"gemini": ai_service.is_available()},
    }

# --- Dashboard ---
@app.get("/dashboard", response_model=StatsModel)
def get_dashboard():
    return StatsModel(**library.get_statistics())

# --- Book catalog ---
@app.get("/books", response_model=List[BookModel])
def get_books(q: Optional[str] = Query(None, description="Match on title, author or ISBN")):
    return [_book_model(b) for b in library.search_books(q or "")]

@app.get("/books/available", response_model=List[BookModel])
def get_available_books(q: Optional[str] = Query(None, description="Match on title or author")):
    """Books with at least one copy on the shelf (the borrow picker)."""
    return [_book_model(b) for b in library.available_books(q or "")]

@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    book = library.get_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_model(book)

@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    book = library.add_book(Book(**payload.model_dump()))
    return _book_model(book)

@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: str, payload: BookCreateModel):
    updated = library.update_book(Book(id=book_id, **payload.model_dump()))
    if not updated:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_model(updated)

@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: str):
    return _delete(EntityKind.BOOK, book_id)

@app.post("/books/lookup", response_model=LookupResponse)
async def lookup_book(payload: LookupRequest):
    """Prefill the book form from an ISBN. Nothing is stored.

    A failed checksum is reported in ``isbn_valid`` but does not block the lookup.
    """
    isbn = ISBNValidator.normalize_isbn(payload.isbn)
    if not isbn:
        raise HTTPException(status_code=400, detail="Enter an ISBN.")
    details = await _await_ai(_require_ai().lookup_book_by_isbn(isbn))
    return LookupResponse(
        isbn=isbn,
        isbn_valid=ISBNValidator.is_valid_isbn(isbn),
        cover_image=Library._placeholder_cover(isbn),
        **details.model_dump(),
    )

@app.post("/books/import", response_model=ImportResponse, dependencies=[Depends(get_api_key)])
async def import_books(request: Request):
    """Import books from a spreadsheet sent as the raw request body (name in X-Filename)."""
    data = await _read_upload(request)
    filename = request.headers.get("X-Filename", "")
    books = await _await_ai(importer.extract_books_from_spreadsheet(_require_ai(), data, filename))
    if await request.is_disconnected():
        logger.info(f"Client left before import finished; discarding {len(books)} books")
        return ImportResponse(imported=0, discarded=True)
    added = library.import_books(books)
    return ImportResponse(imported=len(added), ids=[b.id for b in added])

# --- Student roster ---
@app.get("/students", response_model=List[StudentModel])
def get_students(q: Optional[str] = Query(None, description="Match on name or address"),
                 class_name: Optional[str] = Query(None, description="Exact class, or 'all'")):
    return [_student_model(s) for s in library.search_students(q or "", class_name)]

@app.get("/students/classes", response_model=List[str])
def get_classes():
    return library.class_names()

@app.get("/students/{student_id}", response_model=StudentModel)
def get_student(student_id: str):
    student = library.get_student(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return _student_model(student)

@app.post("/students", response_model=StudentModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_student(payload: StudentCreateModel):
    return _student_model(library.add_student(Student(**payload.model_dump())))

@app.put("/students/{student_id}", response_model=StudentModel, dependencies=[Depends(get_api_key)])
def update_student(student_id: str, payload: StudentCreateModel):
    existing = library.get_student(student_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Student not found.")
    updated = library.update_student(Student(id=student_id, join_date=existing.join_date, **payload.model_dump()))
    return _student_model(updated)

@app.delete("/students/{student_id}", dependencies=[Depends(get_api_key)])
def delete_student(student_id: str):
    return _delete(EntityKind.STUDENT, student_id)

@app.post("/students/import", response_model=ImportResponse, dependencies=[Depends(get_api_key)])
async def import_students(request: Request):
    """Import students from a spreadsheet sent as the raw request body (name in X-Filename)."""
    data = await _read_upload(request)
    filename = request.headers.get("X-Filename", "")
    students = await _await_ai(importer.extract_students_from_spreadsheet(_require_ai(), data, filename))
    if await request.is_disconnected():
        logger.info(f"Client left before import finished; discarding {len(students)} students")
        return ImportResponse(imported=0, discarded=True)
    added = library.import_students(students)
    return ImportResponse(imported=len(added), ids=[s.id for s in added])

@app.post("/students/import/image", response_model=ImportResponse, dependencies=[Depends(get_api_key)])
async def import_students_image(request: Request):
    """Import students from a class-list photo; the body is the image, Content-Type its MIME type."""
    data = await _read_upload(request)
    mime_type = request.headers.get("Content-Type", "")
    students = await _await_ai(importer.extract_students_from_image(_require_ai(), data, mime_type))
    if await request.is_disconnected():
        logger.info(f"Client left before import finished; discarding {len(students)} students")
        return ImportResponse(imported=0, discarded=True)
    added = library.import_students(students)
    return ImportResponse(imported=len(added), ids=[s.id for s in added])

# --- Borrow / return ---
@app.get("/borrowings", response_model=List[LoanModel])
def get_borrowings(overdue: Optional[bool] = Query(None, description="Only overdue (true) or on-time (false) loans")):
    rows = library.loan_details()
    if overdue is not None:
        rows = [r for r in rows if r["overdue"] == overdue]
    return rows

@app.post("/borrowings", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def borrow_book(payload: BorrowRequest):
    book = library.get_book(payload.book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    if not library.get_student(payload.student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    if not book.is_available:
        raise HTTPException(status_code=409, detail=f'No copies of "{book.title}" are available.')
    record = library.borrow_book(payload.book_id, payload.student_id, payload.duration_days)
    if record is None:
        raise HTTPException(status_code=409, detail="The book could not be borrowed.")
    return library.loan_details([record])[0]

@app.post("/borrowings/{record_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def return_book(record_id: str):
    record = library.get_record(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Borrowing record not found.")
    # Resolve names before the record disappears
    details = library.loan_details([record])
    library.return_book(record_id)
    if details:
        return details[0]
    now = library.now()
    return LoanModel(**record.to_dict(now), days_overdue=record.days_overdue(now))

# --- AI assistant ---
@app.post("/assistant/recommendations", response_model=RecommendationResponse)
async def get_recommendations(payload: RecommendationRequest):
    if payload.student_id:
        prompt = library.reading_history_prompt(payload.student_id)
        if prompt is None:
            raise HTTPException(status_code=404, detail="Student not found.")
    elif payload.query and payload.query.strip():
        prompt = payload.query.strip()
    else:
        raise HTTPException(status_code=400, detail="Select a student or enter a request.")
    recommendations = await _await_ai(_require_ai().get_recommendations(prompt))
    return RecommendationResponse(
        prompt=prompt,
        recommendations=[RecommendationModel(**r.model_dump()) for r in recommendations],
    )

# --- Admin ---
@app.get("/admin/api-usage")
def get_api_usage_stats() -> Dict[str, Any]:
    return {"gemini": ai_service.get_usage_stats()}
