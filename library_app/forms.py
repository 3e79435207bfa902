"""Form schemas checked before anything is sent to the backend."""

from typing import Dict, Optional

from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator, model_validator

from library_app.models import Role


class LoginForm(BaseModel):
    email: EmailStr
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


class RegisterForm(BaseModel):
    full_name: str
    email: EmailStr
    password: str
    confirm_password: str
    role: Role = Role.MEMBER
    admin_code: Optional[str] = None

    @field_validator("full_name")
    @classmethod
    def name_length(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        return v

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("password", "confirm_password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v

    @field_validator("admin_code")
    @classmethod
    def blank_code_is_none(cls, v: Optional[str]) -> Optional[str]:
        return (v or "").strip() or None

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterForm":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        if self.role == Role.ADMIN and not self.admin_code:
            raise ValueError("Invalid admin code")
        return self


class BookForm(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    category: str = Field(min_length=1)
    available: bool = True

    @field_validator("title", "author", "isbn", "category", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


def form_errors(error: ValidationError) -> Dict[str, str]:
    """Map a ValidationError to ``{field: message}`` for templates."""
    errors: Dict[str, str] = {}
    for item in error.errors():
        location = item.get("loc") or ("__all__",)
        name = str(location[0]) if location else "__all__"
        message = item.get("msg", "Invalid value")
        # pydantic prefixes messages raised from validators
        message = message.removeprefix("Value error, ")
        if name == "email":
            message = "Please enter a valid email address"
        if item.get("type") == "string_too_short" and name in BookForm.model_fields:
            message = f"{name.replace('_', ' ').capitalize()} is required"
        errors.setdefault(name, message)
    return errors
