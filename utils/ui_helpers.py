import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def print_book_list(books: List[Any], borrowers: Dict[str, List[str]] | None = None) -> None:
    """Print books in the current output mode.
    - plain: 'id - Title by Author [on shelf/total]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()
    borrowers = borrowers or {}

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() | {"borrowers": borrowers.get(b.id, [])} for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="magenta")
        table.add_column("On shelf", justify="right")
        table.add_column("Borrowed by", style="yellow")
        for b in books:
            table.add_row(b.id, b.title, b.author, b.genre, f"{b.quantity}/{b.total_copies}",
                          ", ".join(borrowers.get(b.id, [])))
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.quantity}/{b.total_copies}]")

def print_student_list(students: List[Any]) -> None:
    mode = get_output_mode()

    if not students:
        print("No students found.")
        return

    if mode == "json":
        print(json.dumps([s.to_dict() for s in students], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🎓 Students", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Class", style="magenta")
        table.add_column("Birth date")
        table.add_column("Address", style="white")
        for s in students:
            table.add_row(s.id, s.name, s.class_name, s.birth_date, s.address)
        _console.print(table)
    else:
        for s in students:
            print(f"{s.id} - {s.name} ({s.class_name})")

def print_loan_list(loans: List[Dict[str, Any]]) -> None:
    """Print loan rows as produced by Library.loan_details."""
    mode = get_output_mode()

    if not loans:
        print("No books are currently borrowed.")
        return

    if mode == "json":
        print(json.dumps(loans, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🔁 Borrowed books", show_lines=True, header_style="bold cyan")
        table.add_column("Record", style="dim", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Student", style="white")
        table.add_column("Due", no_wrap=True)
        table.add_column("Status")
        for row in loans:
            status = f"[bold red]OVERDUE ({row['days_overdue']}d)[/]" if row["overdue"] else "[green]on time[/]"
            table.add_row(row["id"], row["book_title"], row["student_name"], row["due_date"][:10], status)
        _console.print(table)
    else:
        for row in loans:
            flag = " OVERDUE" if row["overdue"] else ""
            print(f"{row['id']} - {row['book_title']} -> {row['student_name']} (due {row['due_date'][:10]}){flag}")

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard figures in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return

    lines = [
        f"Total Books: {stats.get('total_books', 0)}",
        f"Borrowed Books: {stats.get('borrowed_books', 0)}",
        f"Overdue Books: {stats.get('overdue_books', 0)}",
        f"Total Students: {stats.get('total_students', 0)}",
    ]
    genres = stats.get("genres", [])
    recent = stats.get("recent_borrowings", [])

    if mode == "rich":
        content = "\n".join(f"[bold]{line.split(':')[0]}:[/]{line.split(':', 1)[1]}" for line in lines)
        _console.print(Panel.fit(content, title="📊 Dashboard", border_style="blue"))
        if genres:
            table = Table(title="Copies by genre", header_style="bold cyan")
            table.add_column("Genre")
            table.add_column("Copies", justify="right")
            for g in genres:
                table.add_row(g["name"], str(g["count"]))
            _console.print(table)
        if recent:
            print_loan_list(recent)
    else:
        for line in lines:
            print(line)
        for g in genres:
            print(f"  {g['name']}: {g['count']}")
        if recent:
            print("Recent borrowings:")
            for row in recent:
                print(f"  {row['book_title']} by {row['student_name']} ({row['borrow_date'][:10]})")

def print_recommendations(recommendations: List[Any]) -> None:
    mode = get_output_mode()

    if not recommendations:
        print("No recommendations.")
        return

    if mode == "json":
        print(json.dumps([r.model_dump() for r in recommendations], ensure_ascii=False))
    elif mode == "rich":
        for r in recommendations:
            _console.print(Panel.fit(f"[italic]{r.reason}[/]", title=f"📖 {r.title} - {r.author}",
                                     border_style="green"))
    else:
        for i, r in enumerate(recommendations, 1):
            print(f"{i}. {r.title} by {r.author}")
            print(f"   {r.reason}")
