from __future__ import annotations

from datetime import datetime


class Student:
    """A registered borrower."""

    def __init__(self, name: str, email: str = "", phone: str = "", join_date: datetime | None = None,
                 birth_date: str = "", gender: str = "", grade: str = "", class_name: str = "",
                 ethnicity: str = "", address: str = "", id: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = (email or "").strip()
        self.phone = (phone or "").strip()
        self.join_date = join_date
        # Free text as written on the class list, e.g. "15/05/2010"
        self.birth_date = birth_date or ""
        self.gender = gender or ""
        self.grade = str(grade or "")
        self.class_name = class_name or ""
        self.ethnicity = ethnicity or ""
        self.address = address or ""

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} ({self.class_name})" if self.class_name else self.name

    def copy(self) -> "Student":
        return Student.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "join_date": self.join_date.isoformat() if self.join_date else None,
            "birth_date": self.birth_date,
            "gender": self.gender,
            "grade": self.grade,
            "class_name": self.class_name,
            "ethnicity": self.ethnicity,
            "address": self.address,
        }

    @staticmethod
    def from_dict(data: dict) -> "Student":
        join_date = data.get("join_date") or data.get("joinDate")
        if isinstance(join_date, str):
            join_date = datetime.fromisoformat(join_date)

        return Student(
            id=data.get("id"),
            name=data["name"],
            email=data.get("email") or "",
            phone=data.get("phone") or "",
            join_date=join_date,
            birth_date=data.get("birth_date") or data.get("birthDate") or "",
            gender=data.get("gender") or "",
            grade=data.get("grade") or "",
            class_name=data.get("class_name") or data.get("className") or "",
            ethnicity=data.get("ethnicity") or "",
            address=data.get("address") or "",
        )
