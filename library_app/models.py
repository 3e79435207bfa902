from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class BorrowStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    DENIED = "denied"
    RETURNED = "returned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by the backend."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class User:
    """A library user as seen through the auth provider."""
    id: str
    email: str
    role: Role = Role.MEMBER
    full_name: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_name(self) -> str:
        return self.full_name or (self.email.split("@")[0] if self.email else "Unknown")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "user_metadata": {"role": self.role.value, "full_name": self.full_name},
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "User":
        # Auth records keep role and name in user_metadata; profile rows carry them flat.
        metadata = data.get("user_metadata") or {}
        role = metadata.get("role") or data.get("role") or Role.MEMBER.value
        try:
            role = Role(role)
        except ValueError:
            role = Role.MEMBER
        return User(
            id=data["id"],
            email=data.get("email") or "",
            role=role,
            full_name=metadata.get("full_name") or data.get("full_name"),
            created_at=data.get("created_at"),
        )


@dataclass
class Book:
    id: str
    title: str
    author: str
    isbn: str
    category: str
    cover_image_url: Optional[str] = None
    available: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "category": self.category,
            "cover_image_url": self.cover_image_url,
            "available": self.available,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=str(data["id"]),
            title=data.get("title") or "",
            author=data.get("author") or "",
            isbn=data.get("isbn") or "",
            category=data.get("category") or "",
            cover_image_url=data.get("cover_image_url"),
            available=bool(data.get("available", True)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Borrow:
    id: str
    book_id: str
    user_id: str
    borrow_date: datetime
    due_date: datetime
    status: BorrowStatus = BorrowStatus.REQUESTED
    return_date: Optional[datetime] = None
    book: Optional[Book] = None
    user: Optional[User] = None

    @property
    def is_overdue(self) -> bool:
        return self.status == BorrowStatus.APPROVED and self.due_date < utcnow()

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "borrow_date": _iso(self.borrow_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status.value,
        }
        if self.book is not None:
            data["book"] = self.book.to_dict()
        if self.user is not None:
            data["user"] = self.user.to_dict()
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Borrow":
        book = data.get("book")
        user = data.get("user")
        return Borrow(
            id=str(data["id"]),
            book_id=str(data["book_id"]),
            user_id=str(data["user_id"]),
            borrow_date=parse_timestamp(data["borrow_date"]),
            due_date=parse_timestamp(data["due_date"]),
            status=BorrowStatus(data.get("status", BorrowStatus.REQUESTED.value)),
            return_date=parse_timestamp(data.get("return_date")),
            book=Book.from_dict(book) if isinstance(book, dict) else None,
            user=User.from_dict(user) if isinstance(user, dict) else None,
        )


@dataclass
class AdminCode:
    """Single-use code that allows registering with the admin role."""
    code: str
    is_used: bool = False
    used_at: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AdminCode":
        return AdminCode(code=data["code"], is_used=bool(data.get("is_used")), used_at=data.get("used_at"))


@dataclass
class Session:
    """Tokens issued by the auth provider plus the user they belong to."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[int]
    user: User

    def is_expired(self, leeway: int = 10) -> bool:
        if self.expires_at is None:
            return False
        return utcnow().timestamp() + leeway >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user": self.user.to_dict(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Session":
        return Session(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            user=User.from_dict(data["user"]),
        )

    @staticmethod
    def from_token_response(data: Dict[str, Any]) -> "Session":
        """Build a session from a ``/token`` response of the auth provider."""
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = int(utcnow().timestamp()) + int(data["expires_in"])
        return Session(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            user=User.from_dict(data["user"]),
        )
