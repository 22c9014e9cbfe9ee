import base64
import logging
import time
from collections import defaultdict
from enum import Enum
from typing import Optional, Dict, Any, List, Union

import httpx
from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, field_validator

from config import settings
from http_client import get_http_client


logger = logging.getLogger(__name__)


class RecordKind(Enum):
    """What a spreadsheet holds"""
    BOOKS = "books"
    STUDENTS = "students"


# --- Response models ---
# Field values are trusted once the shape matches; only types are enforced.

class BookLookup(BaseModel):
    """Metadata returned for an ISBN lookup"""
    title: str
    author: str
    description: str
    genre: str


class BookDraft(BaseModel):
    """A book row extracted from a spreadsheet"""
    title: str
    author: str
    isbn: str
    genre: str
    description: str
    quantity: int


class StudentDraft(BaseModel):
    """A student row extracted from a spreadsheet or class-list photo"""
    name: str
    birth_date: str = Field(validation_alias=AliasChoices("birth_date", "birthDate"))
    gender: str
    grade: str
    class_name: str = Field(validation_alias=AliasChoices("class_name", "className"))
    ethnicity: str
    address: str

    @field_validator("grade", mode="before")
    @classmethod
    def _grade_as_text(cls, value: Any) -> Any:
        # Models sometimes answer "grade": 6
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class Recommendation(BaseModel):
    title: str
    author: str
    reason: str


class RecommendationList(BaseModel):
    recommendations: List[Recommendation]


_book_lookup_adapter = TypeAdapter(BookLookup)
_book_drafts_adapter = TypeAdapter(List[BookDraft])
_student_drafts_adapter = TypeAdapter(List[StudentDraft])
_recommendations_adapter = TypeAdapter(RecommendationList)


# --- Response schemas sent to the model ---

BOOK_LOOKUP_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING", "description": "Title of the book"},
        "author": {"type": "STRING", "description": "Author of the book"},
        "description": {"type": "STRING", "description": "Short description of the book's content"},
        "genre": {"type": "STRING", "description": "Main genre of the book (e.g. Novel, Science fiction)"},
    },
    "required": ["title", "author", "description", "genre"],
}

BOOKS_SCHEMA: Dict[str, Any] = {
    "type": "ARRAY",
    "description": "List of books.",
    "items": {
        "type": "OBJECT",
        "properties": {
            "title": {"type": "STRING", "description": "Title of the book"},
            "author": {"type": "STRING", "description": "Author of the book"},
            "isbn": {"type": "STRING", "description": "ISBN of the book"},
            "genre": {"type": "STRING", "description": "Main genre of the book"},
            "description": {"type": "STRING", "description": "Short description of the book's content"},
            "quantity": {"type": "INTEGER", "description": "Number of copies the library holds"},
        },
        "required": ["title", "author", "isbn", "genre", "description", "quantity"],
    },
}

STUDENTS_SCHEMA: Dict[str, Any] = {
    "type": "ARRAY",
    "description": "List of students.",
    "items": {
        "type": "OBJECT",
        "properties": {
            "name": {"type": "STRING", "description": "Full name of the student"},
            "birth_date": {"type": "STRING", "description": "Date of birth, formatted DD/MM/YYYY"},
            "gender": {"type": "STRING", "description": "Gender of the student"},
            "grade": {"type": "STRING", "description": "Grade level (e.g. 6)"},
            "class_name": {"type": "STRING", "description": "Class name (e.g. 6A)"},
            "ethnicity": {"type": "STRING", "description": "Ethnicity of the student"},
            "address": {"type": "STRING", "description": "Permanent address of the student"},
        },
        "required": ["name", "birth_date", "gender", "grade", "class_name", "ethnicity", "address"],
    },
}

RECOMMENDATION_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "recommendations": {
            "type": "ARRAY",
            "description": "Recommended books.",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "title": {"type": "STRING", "description": "Title of the recommended book."},
                    "author": {"type": "STRING", "description": "Author of the book."},
                    "reason": {"type": "STRING", "description": "Short reason this book fits the request."},
                },
                "required": ["title", "author", "reason"],
            },
        }
    },
    "required": ["recommendations"],
}


class AIServiceError(Exception):
    """The AI provider could not produce a usable answer"""
    pass


class AIServiceUnavailable(AIServiceError):
    """AI features disabled or no API key configured"""
    pass


class AIResponseError(AIServiceError):
    """Transport failure, error status, or a response that does not match the schema"""
    pass


class GeminiService:
    """Schema-constrained JSON extraction through the Gemini generateContent API.

    Each operation makes exactly one request. There is no retry and no cache;
    every failure surfaces as an AIServiceError carrying a message fit for
    showing to the user.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, enabled: Optional[bool] = None):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.base_url = settings.gemini_base_url.rstrip("/")
        self.timeout = settings.gemini_timeout
        self.enabled = settings.enable_ai_features if enabled is None else enabled
        self._client = client

        self._usage: Dict[str, Dict[str, int]] = defaultdict(lambda: {"requests": 0, "failures": 0})

    def is_available(self) -> bool:
        return bool(self.enabled and self.api_key)

    def get_usage_stats(self) -> Dict[str, Any]:
        """In-process request counters, per operation and in total"""
        operations = {name: dict(counts) for name, counts in self._usage.items()}
        return {
            "model": self.model,
            "available": self.is_available(),
            "total_requests": sum(c["requests"] for c in operations.values()),
            "total_failures": sum(c["failures"] for c in operations.values()),
            "operations": operations,
        }

    def _record_usage(self, operation: str, success: bool, response_time_ms: int) -> None:
        self._usage[operation]["requests"] += 1
        if not success:
            self._usage[operation]["failures"] += 1
        logger.info(f"Gemini call: operation={operation}, success={success}, time_ms={response_time_ms}")

    @staticmethod
    def _extract_text(data: Any) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts).strip()
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise AIResponseError("Response has no candidate text") from exc
        if not text:
            raise AIResponseError("Response has no candidate text")
        return text

    async def _generate(self, operation: str, error_message: str, parts: List[Dict[str, Any]],
                        schema: Dict[str, Any], adapter: TypeAdapter) -> Any:
        if not self.is_available():
            logger.warning("Gemini API key not configured or AI features disabled")
            raise AIServiceUnavailable("AI features are not configured. Set GEMINI_API_KEY to enable them.")

        url = f"{self.base_url}/models/{self.model}:generateContent"
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json"
        }
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }

        start_time = time.time()
        try:
            client = self._client or (await get_http_client()).client
            response = await client.post(url, json=payload, headers=headers, timeout=self.timeout)
            if response.status_code != 200:
                raise AIResponseError(f"API request failed: {response.status_code} - {response.text[:200]}")
            result = adapter.validate_json(self._extract_text(response.json()))
        except (httpx.HTTPError, ValueError, AIResponseError) as exc:
            # pydantic's ValidationError and json's JSONDecodeError are both ValueErrors
            self._record_usage(operation, False, int((time.time() - start_time) * 1000))
            logger.error(f"Gemini {operation} failed: {exc}")
            raise AIResponseError(error_message) from exc

        self._record_usage(operation, True, int((time.time() - start_time) * 1000))
        return result

    async def lookup_book_by_isbn(self, isbn: str) -> BookLookup:
        """Title, author, description and genre for an ISBN"""
        prompt = f'You are a helpful library assistant. Given the ISBN "{isbn}", provide the details of this book.'
        return await self._generate(
            "lookup_book",
            "Could not retrieve book details. Please try again.",
            [{"text": prompt}],
            BOOK_LOOKUP_SCHEMA,
            _book_lookup_adapter,
        )

    async def get_recommendations(self, prompt: str) -> List[Recommendation]:
        """Books suggested for a free-form request or a student's reading history.

        The model is asked for three; whatever it returns is passed through.
        """
        full_prompt = (
            "You are a knowledgeable library assistant. Based on the following request, "
            f'recommend 3 suitable books. Request: "{prompt}"'
        )
        result: RecommendationList = await self._generate(
            "recommendations",
            "Could not get recommendations. Please try again.",
            [{"text": full_prompt}],
            RECOMMENDATION_SCHEMA,
            _recommendations_adapter,
        )
        return result.recommendations

    async def extract_students_from_image(self, image_bytes: bytes, mime_type: str) -> List[StudentDraft]:
        """Read the student table in a photographed class list"""
        image_part = {
            "inline_data": {
                "mime_type": mime_type,
                "data": base64.b64encode(image_bytes).decode("ascii"),
            }
        }
        text_part = {
            "text": (
                "Extract every student from the table in this image. Return only a JSON array following "
                "the provided schema. Skip titles and rows that are not student data. The columns are: "
                "No., Full name, Date of birth, Gender, Grade, Class, Ethnicity, Permanent address."
            )
        }
        return await self._generate(
            "students_from_image",
            "Could not extract data from the image. Please try again with a clearer image.",
            [image_part, text_part],
            STUDENTS_SCHEMA,
            _student_drafts_adapter,
        )

    async def extract_records_from_csv(self, csv_text: str, kind: RecordKind) -> Union[List[BookDraft], List[StudentDraft]]:
        """Rows of a spreadsheet (already rendered as CSV text) as book or student drafts"""
        if kind is RecordKind.BOOKS:
            prompt = (
                "This is CSV data from a spreadsheet containing a list of books. Extract every book. "
                "Return only a JSON array following the provided schema. Skip the header row if present. "
                "Columns may include: title, author, isbn, genre, description, quantity. CSV data:\n\n"
                f"{csv_text}"
            )
            schema, adapter, operation = BOOKS_SCHEMA, _book_drafts_adapter, "books_from_csv"
        else:
            prompt = (
                "This is CSV data from a spreadsheet containing a list of students. Extract every student. "
                "Return only a JSON array following the provided schema. Skip the header row if present. "
                f"CSV data:\n\n{csv_text}"
            )
            schema, adapter, operation = STUDENTS_SCHEMA, _student_drafts_adapter, "students_from_csv"

        return await self._generate(
            operation,
            "Could not extract data from the spreadsheet. Please check the file format.",
            [{"text": prompt}],
            schema,
            adapter,
        )
