"""Screen identifiers and the dialog states each screen can show."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from book import Book
from student import Student


class View(Enum):
    """Screens the shell can switch between"""
    DASHBOARD = "DASHBOARD"
    BOOKS = "BOOKS"
    STUDENTS = "STUDENTS"
    BORROW = "BORROW"
    AI_ASSISTANT = "AI_ASSISTANT"

    @property
    def label(self) -> str:
        return VIEW_LABELS[self]


VIEW_LABELS = {
    View.DASHBOARD: "Dashboard",
    View.BOOKS: "Book catalog",
    View.STUDENTS: "Student roster",
    View.BORROW: "Borrow / Return",
    View.AI_ASSISTANT: "AI assistant",
}


class EntityKind(Enum):
    BOOK = "book"
    STUDENT = "student"


@dataclass
class AddDialog:
    kind: EntityKind


@dataclass
class EditDialog:
    kind: EntityKind
    entity: Union[Book, Student]


@dataclass
class DeleteDialog:
    """Confirmation step before a delete that the library will accept."""
    kind: EntityKind
    entity: Union[Book, Student]

    @property
    def message(self) -> str:
        return f'Delete "{_display_name(self.entity)}"? This cannot be undone.'


@dataclass
class ErrorDialog:
    message: str
    title: str = "Error"


Dialog = Union[AddDialog, EditDialog, DeleteDialog, ErrorDialog]


def _display_name(entity: Union[Book, Student]) -> str:
    return entity.title if isinstance(entity, Book) else entity.name


def form_dialog(kind: EntityKind, entity: Optional[Union[Book, Student]] = None) -> Dialog:
    """Open the add form, or the edit form prefilled with a copy of ``entity``."""
    if entity is None:
        return AddDialog(kind)
    return EditDialog(kind, entity.copy())


def delete_dialog(library, kind: EntityKind, entity_id: str) -> Optional[Dialog]:
    """Pick the dialog for a delete request: confirmation, refusal, or None if the id is unknown."""
    if kind is EntityKind.BOOK:
        entity = library.get_book(entity_id)
        if entity is None:
            return None
        if not library.can_delete_book(entity_id):
            return ErrorDialog(
                f'Cannot delete book "{entity.title}" because it is currently borrowed.',
                title="Cannot delete book",
            )
    else:
        entity = library.get_student(entity_id)
        if entity is None:
            return None
        if not library.can_delete_student(entity_id):
            return ErrorDialog(
                f'Cannot delete student "{entity.name}" because they still have borrowed books.',
                title="Cannot delete student",
            )
    return DeleteDialog(kind, entity)
