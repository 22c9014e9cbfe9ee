from __future__ import annotations


class Book:
    """A title held by the library, with its shelf count and current borrowers."""

    def __init__(self, title: str, author: str, isbn: str = "", genre: str = "", description: str = "",
                 quantity: int = 1, cover_image: str = "", id: str | None = None,
                 borrowed_by: list | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = (isbn or "").strip()
        self.genre = (genre or "").strip()
        self.description = description or ""
        # Copies on the shelf; borrowed copies live in borrowed_by
        self.quantity = quantity
        self.cover_image = cover_image or ""
        self.borrowed_by: list[str] = list(borrowed_by or [])

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, title={self.title!r}, quantity={self.quantity}, borrowed_by={self.borrowed_by!r})"

    @property
    def total_copies(self) -> int:
        return self.quantity + len(self.borrowed_by)

    @property
    def is_available(self) -> bool:
        return self.quantity > 0

    def copy(self) -> "Book":
        return Book.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "description": self.description,
            "quantity": self.quantity,
            "cover_image": self.cover_image,
            "borrowed_by": list(self.borrowed_by),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # Accept the camelCase keys produced by spreadsheet/AI payloads as well
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn") or "",
            genre=data.get("genre") or "",
            description=data.get("description") or "",
            quantity=int(data.get("quantity", 1)),
            cover_image=data.get("cover_image") or data.get("coverImage") or "",
            borrowed_by=data.get("borrowed_by", data.get("borrowedBy")),
        )
