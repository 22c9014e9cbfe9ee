import asyncio
import logging
import mimetypes
import os
import subprocess
import sys
import webbrowser
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.markup import escape
from rich import box
import typer

import importer
from book import Book
from config import settings
from gemini_service import AIServiceError, GeminiService
from http_client import cleanup_http_client
from importer import ImportFileError
from library import Library, DeleteOutcome
from student import Student
from utils.ui_helpers import (
    set_output_mode, print_book_list, print_student_list, print_loan_list,
    print_stats_result, print_recommendations,
)
from utils.validators import ISBNValidator, LoanValidator
from views import (
    View, EntityKind, EditDialog, DeleteDialog, ErrorDialog, delete_dialog, form_dialog,
)

APP_NAME = settings.app_name

logging.basicConfig(level=settings.log_level, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

console = Console()


class LibraryManager:
    """Holds the session: one Library and one AI gateway per CLI process."""
    _instance: Optional[Library] = None
    _ai_service: Optional[GeminiService] = None

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library.with_seed_data() if settings.seed_on_startup else Library()
            logger.debug("Library session started")
        return cls._instance

    @classmethod
    def get_ai_service(cls) -> GeminiService:
        if cls._ai_service is None:
            cls._ai_service = GeminiService()
        return cls._ai_service

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._ai_service = None


def _run_ai(coro_factory):
    """Run one gateway call to completion on a fresh event loop."""
    async def runner():
        try:
            return await coro_factory()
        finally:
            await cleanup_http_client()
    return asyncio.run(runner())


def _is_image(path: str) -> bool:
    mime, _ = mimetypes.guess_type(path)
    return bool(mime and mime.startswith("image/"))


def _borrowers_by_book(lib: Library) -> dict:
    return {b.id: lib.borrowers_of(b.id) for b in lib.books}


# --- Typer CLI ---
app = typer.Typer(help=f"{APP_NAME} CLI")

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)

@app.command("dashboard")
def cli_dashboard():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())

@app.command("books")
def cli_books(query: Optional[str] = typer.Argument(None, help="Match on title, author or ISBN"),
              available: bool = typer.Option(False, "--available", help="Only books with copies on the shelf")):
    """List books in the catalog."""
    lib = LibraryManager.get_instance()
    books = lib.available_books(query or "") if available else lib.search_books(query or "")
    print_book_list(books, _borrowers_by_book(lib))

@app.command("students")
def cli_students(query: Optional[str] = typer.Argument(None, help="Match on name or address"),
                 class_name: Optional[str] = typer.Option(None, "--class", "-c", help="Only this class")):
    """List students."""
    print_student_list(LibraryManager.get_instance().search_students(query or "", class_name))

@app.command("loans")
def cli_loans(overdue: bool = typer.Option(False, "--overdue", help="Only overdue loans")):
    """List books currently borrowed."""
    lib = LibraryManager.get_instance()
    records = lib.overdue_records() if overdue else lib.list_records()
    print_loan_list(lib.loan_details(records))

@app.command("borrow")
def cli_borrow(book_id: str, student_id: str,
               days: int = typer.Option(settings.default_loan_days, "--days", "-d", help="Loan length in days")):
    """Lend a book to a student."""
    if not LoanValidator.is_valid_duration(days):
        print(f"Error: {LoanValidator.error_message()}")
        return
    lib = LibraryManager.get_instance()
    book = lib.get_book(book_id)
    student = lib.get_student(student_id)
    if not book:
        print(f"Book {book_id} not found.")
        return
    if not student:
        print(f"Student {student_id} not found.")
        return
    record = lib.borrow_book(book_id, student_id, days)
    if record is None:
        print(f'No copies of "{book.title}" are available.')
        return
    print(f"Borrowed: {book.title} -> {student.name}, due {record.due_date.date().isoformat()} (record {record.id})")

@app.command("return")
def cli_return(record_id: str):
    """Return a borrowed book by its record id."""
    lib = LibraryManager.get_instance()
    record = lib.return_book(record_id)
    if record is None:
        print(f"Borrowing record {record_id} not found.")
        return
    book = lib.get_book(record.book_id)
    print(f"Returned: {book.title if book else record.book_id}")

def _confirm_and_delete(lib: Library, kind: EntityKind, entity_id: str, yes: bool) -> None:
    dialog = delete_dialog(lib, kind, entity_id)
    if dialog is None:
        print(f"{kind.value.title()} {entity_id} not found.")
        return
    if isinstance(dialog, ErrorDialog):
        print(dialog.message)
        return
    if not yes and not Confirm.ask(dialog.message, default=False):
        print("Cancelled.")
        return
    outcome = lib.delete_book(entity_id) if kind is EntityKind.BOOK else lib.delete_student(entity_id)
    if outcome is DeleteOutcome.DELETED:
        print(f"{kind.value.title()} {entity_id} has been deleted.")

@app.command("delete-book")
def cli_delete_book(book_id: str, yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Delete a book that nobody is borrowing."""
    _confirm_and_delete(LibraryManager.get_instance(), EntityKind.BOOK, book_id, yes)

@app.command("delete-student")
def cli_delete_student(student_id: str, yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Delete a student with no borrowed books."""
    _confirm_and_delete(LibraryManager.get_instance(), EntityKind.STUDENT, student_id, yes)

@app.command("lookup")
def cli_lookup(isbn: str):
    """Look up book details for an ISBN with the AI assistant."""
    isbn = ISBNValidator.normalize_isbn(isbn)
    if not isbn:
        print("Error: Enter an ISBN.")
        return
    if not ISBNValidator.is_valid_isbn(isbn):
        print(f"Warning: {isbn} is not a valid ISBN-10/13; looking it up anyway.")
    service = LibraryManager.get_ai_service()
    try:
        details = _run_ai(lambda: service.lookup_book_by_isbn(isbn))
    except AIServiceError as e:
        print(f"Error: {e}")
        return
    print(f"ISBN: {isbn}")
    print(f"Title: {details.title}")
    print(f"Author: {details.author}")
    print(f"Genre: {details.genre}")
    print(f"Description: {details.description}")

@app.command("recommend")
def cli_recommend(student_id: Optional[str] = typer.Option(None, "--student", "-s", help="Base on a student's loans"),
                  query: Optional[str] = typer.Option(None, "--query", "-q", help="Free-form request")):
    """Ask the AI assistant for reading recommendations."""
    lib = LibraryManager.get_instance()
    if student_id:
        prompt = lib.reading_history_prompt(student_id)
        if prompt is None:
            print(f"Student {student_id} not found.")
            return
    elif query and query.strip():
        prompt = query.strip()
    else:
        print("Select a student or enter a request.")
        return
    service = LibraryManager.get_ai_service()
    try:
        recommendations = _run_ai(lambda: service.get_recommendations(prompt))
    except AIServiceError as e:
        print(f"Error: {e}")
        return
    print_recommendations(recommendations)

@app.command("import-books")
def cli_import_books(file_path: str):
    """Import books from a spreadsheet (.xlsx, .xls or .csv)."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        return
    lib = LibraryManager.get_instance()
    service = LibraryManager.get_ai_service()
    data = Path(file_path).read_bytes()
    try:
        books = _run_ai(lambda: importer.import_books_from_spreadsheet(lib, service, data, file_path))
    except (ImportFileError, AIServiceError) as e:
        print(f"Import failed: {e}")
        return
    print(f"Imported {len(books)} books.")

@app.command("import-students")
def cli_import_students(file_path: str):
    """Import students from a spreadsheet or a photo of a class list."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        return
    lib = LibraryManager.get_instance()
    service = LibraryManager.get_ai_service()
    data = Path(file_path).read_bytes()
    try:
        if _is_image(file_path):
            mime_type, _ = mimetypes.guess_type(file_path)
            students = _run_ai(lambda: importer.import_students_from_image(lib, service, data, mime_type))
        else:
            students = _run_ai(lambda: importer.import_students_from_spreadsheet(lib, service, data, file_path))
    except (ImportFileError, AIServiceError) as e:
        print(f"Import failed: {e}")
        return
    print(f"Imported {len(students)} students.")

@app.command("serve")
def cli_serve(host: Optional[str] = typer.Option(None, "--host"), port: Optional[int] = typer.Option(None, "--port"),
              open_browser: bool = typer.Option(True, "--browser/--no-browser", help="Open the API docs")):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            logger.warning("Could not open a web browser")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")

@app.command("menu")
def cli_menu():
    """Interactive session that keeps state until you quit."""
    run_menu()


# --- Interactive shell ---
def _prompt_book_form(dialog) -> Optional[Book]:
    draft = dialog.entity if isinstance(dialog, EditDialog) else Book(title="", author="")
    title = Prompt.ask("Title", default=draft.title or None)
    author = Prompt.ask("Author", default=draft.author or None)
    if not title or not author:
        console.print("[yellow]Title and author are required.[/]")
        return None
    draft.title = title.strip()
    draft.author = author.strip()
    draft.isbn = Prompt.ask("ISBN", default=draft.isbn)
    draft.genre = Prompt.ask("Genre", default=draft.genre)
    draft.description = Prompt.ask("Description", default=draft.description)
    quantity = IntPrompt.ask("Quantity", default=draft.quantity)
    if quantity < 0:
        console.print("[yellow]Quantity cannot be negative.[/]")
        return None
    draft.quantity = quantity
    return draft

def _prompt_student_form(dialog) -> Optional[Student]:
    draft = dialog.entity if isinstance(dialog, EditDialog) else Student(name="")
    name = Prompt.ask("Name", default=draft.name or None)
    if not name:
        console.print("[yellow]Name is required.[/]")
        return None
    draft.name = name.strip()
    for attr, label in (("email", "Email"), ("phone", "Phone"), ("birth_date", "Birth date"),
                        ("gender", "Gender"), ("grade", "Grade"), ("class_name", "Class"),
                        ("ethnicity", "Ethnicity"), ("address", "Address")):
        setattr(draft, attr, Prompt.ask(label, default=getattr(draft, attr)))
    return draft

def _show_dialog_result(dialog) -> bool:
    """Print refusals; True when the caller may go on with the action."""
    if isinstance(dialog, ErrorDialog):
        console.print(Panel.fit(escape(dialog.message), title=dialog.title, border_style="red"))
        return False
    if isinstance(dialog, DeleteDialog):
        return Confirm.ask(dialog.message, default=False)
    return True

def _import_file(kind: EntityKind) -> None:
    lib = LibraryManager.get_instance()
    service = LibraryManager.get_ai_service()
    path = Prompt.ask("File path").strip()
    if not os.path.exists(path):
        console.print(f"[yellow]File not found: {escape(path)}[/]")
        return
    data = Path(path).read_bytes()
    try:
        with console.status("Extracting records with the AI assistant..."):
            if kind is EntityKind.BOOK:
                added = _run_ai(lambda: importer.import_books_from_spreadsheet(lib, service, data, path))
            elif _is_image(path):
                mime_type, _ = mimetypes.guess_type(path)
                added = _run_ai(lambda: importer.import_students_from_image(lib, service, data, mime_type))
            else:
                added = _run_ai(lambda: importer.import_students_from_spreadsheet(lib, service, data, path))
    except (ImportFileError, AIServiceError) as e:
        console.print(f"[bold red]Import failed:[/] {escape(str(e))}")
        return
    console.print(f"[green]Imported {len(added)} records.[/]")

def dashboard_view(lib: Library) -> None:
    print_stats_result(lib.get_statistics())

def books_view(lib: Library) -> None:
    query = ""
    while True:
        print_book_list(lib.search_books(query), _borrowers_by_book(lib))
        action = Prompt.ask("[s]earch [a]dd [e]dit [d]elete [l]ookup ISBN [i]mport [b]ack",
                            choices=["s", "a", "e", "d", "l", "i", "b"], default="b")
        if action == "b":
            return
        if action == "s":
            query = Prompt.ask("Search", default="")
        elif action == "a":
            book = _prompt_book_form(form_dialog(EntityKind.BOOK))
            if book:
                lib.add_book(book)
        elif action == "e":
            existing = lib.get_book(Prompt.ask("Book id"))
            if not existing:
                console.print("[yellow]Book not found.[/]")
                continue
            book = _prompt_book_form(form_dialog(EntityKind.BOOK, existing))
            if book:
                lib.update_book(book)
        elif action == "d":
            book_id = Prompt.ask("Book id")
            dialog = delete_dialog(lib, EntityKind.BOOK, book_id)
            if dialog is None:
                console.print("[yellow]Book not found.[/]")
            elif _show_dialog_result(dialog):
                lib.delete_book(book_id)
        elif action == "l":
            isbn = ISBNValidator.normalize_isbn(Prompt.ask("ISBN"))
            if not isbn:
                console.print("[yellow]Enter an ISBN.[/]")
                continue
            service = LibraryManager.get_ai_service()
            try:
                with console.status("Looking up..."):
                    details = _run_ai(lambda: service.lookup_book_by_isbn(isbn))
            except AIServiceError as e:
                console.print(f"[bold red]{escape(str(e))}[/]")
                continue
            draft = Book(title=details.title, author=details.author, isbn=isbn, genre=details.genre,
                         description=details.description)
            book = _prompt_book_form(EditDialog(EntityKind.BOOK, draft))
            if book:
                lib.add_book(book)
        elif action == "i":
            _import_file(EntityKind.BOOK)

def students_view(lib: Library) -> None:
    query, class_name = "", None
    while True:
        print_student_list(lib.search_students(query, class_name))
        action = Prompt.ask("[s]earch [c]lass filter [a]dd [e]dit [d]elete [i]mport [b]ack",
                            choices=["s", "c", "a", "e", "d", "i", "b"], default="b")
        if action == "b":
            return
        if action == "s":
            query = Prompt.ask("Search", default="")
        elif action == "c":
            class_name = Prompt.ask("Class", choices=["all"] + lib.class_names(), default="all")
        elif action == "a":
            student = _prompt_student_form(form_dialog(EntityKind.STUDENT))
            if student:
                lib.add_student(student)
        elif action == "e":
            existing = lib.get_student(Prompt.ask("Student id"))
            if not existing:
                console.print("[yellow]Student not found.[/]")
                continue
            student = _prompt_student_form(form_dialog(EntityKind.STUDENT, existing))
            if student:
                lib.update_student(student)
        elif action == "d":
            student_id = Prompt.ask("Student id")
            dialog = delete_dialog(lib, EntityKind.STUDENT, student_id)
            if dialog is None:
                console.print("[yellow]Student not found.[/]")
            elif _show_dialog_result(dialog):
                lib.delete_student(student_id)
        elif action == "i":
            _import_file(EntityKind.STUDENT)

def borrow_view(lib: Library) -> None:
    while True:
        print_loan_list(lib.loan_details())
        action = Prompt.ask("[o]ut (borrow) [r]eturn [b]ack", choices=["o", "r", "b"], default="b")
        if action == "b":
            return
        if action == "r":
            record = lib.return_book(Prompt.ask("Record id"))
            if record is None:
                console.print("[yellow]Borrowing record not found.[/]")
            continue
        print_book_list(lib.available_books(Prompt.ask("Find book", default="")))
        book_id = Prompt.ask("Book id")
        print_student_list(lib.search_students(Prompt.ask("Find student", default="")))
        student_id = Prompt.ask("Student id")
        presets = [str(d) for d in settings.loan_duration_presets]
        choice = Prompt.ask("Duration in days", choices=presets + ["custom"], default=str(settings.default_loan_days))
        raw = Prompt.ask(f"Days ({settings.min_loan_days}-{settings.max_loan_days})") if choice == "custom" else choice
        try:
            days = LoanValidator.parse_duration(raw)
        except ValueError as e:
            console.print(f"[yellow]{e}[/]")
            continue
        if lib.borrow_book(book_id, student_id, days) is None:
            console.print("[yellow]Could not borrow: check the book and student ids and that a copy is available.[/]")

def assistant_view(lib: Library) -> None:
    print_student_list(lib.list_students())
    student_id = Prompt.ask("Student id (leave empty for a free-form request)", default="")
    if student_id:
        prompt = lib.reading_history_prompt(student_id)
        if prompt is None:
            console.print("[yellow]Student not found.[/]")
            return
    else:
        prompt = Prompt.ask("What would you like to read about?", default="").strip()
        if not prompt:
            console.print("[yellow]Select a student or enter a request.[/]")
            return
    service = LibraryManager.get_ai_service()
    try:
        with console.status("Asking the AI assistant..."):
            recommendations = _run_ai(lambda: service.get_recommendations(prompt))
    except AIServiceError as e:
        console.print(f"[bold red]{escape(str(e))}[/]")
        return
    print_recommendations(recommendations)

VIEW_HANDLERS = {
    View.DASHBOARD: dashboard_view,
    View.BOOKS: books_view,
    View.STUDENTS: students_view,
    View.BORROW: borrow_view,
    View.AI_ASSISTANT: assistant_view,
}

def run_menu():
    """Navigation shell: pick a view, work in it, come back here."""
    views = list(View)
    keys = [str(i) for i in range(1, len(views) + 1)]

    def render_menu() -> None:
        table = Table.grid(padding=(0, 2))
        table.add_column(justify="right", style="bold cyan", width=4)
        table.add_column(justify="left", style="white")
        for key, view in zip(keys, views):
            table.add_row(f"[reverse]{key}[/]", view.label)
        table.add_row("[reverse]0[/]", "Quit")
        console.print(Panel(table, title=APP_NAME, border_style="cyan", box=box.HEAVY, padding=(1, 2)))

    lib = LibraryManager.get_instance()
    while True:
        render_menu()
        choice = Prompt.ask("Choose a view", choices=keys + ["0"], default="1")
        if choice == "0":
            console.print("[green]Goodbye![/]")
            break
        VIEW_HANDLERS[views[int(choice) - 1]](lib)
        print()

if __name__ == "__main__":
    if len(sys.argv) > 1:
        app()
    else:
        run_menu()
