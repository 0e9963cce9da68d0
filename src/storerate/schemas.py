"""Request and response models for the HTTP surface and service inputs."""

from datetime import datetime
from typing import List, Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from .models.user import Role

NAME_MIN_LENGTH = 20
NAME_MAX_LENGTH = 60
ADDRESS_MAX_LENGTH = 400
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 16
PASSWORD_SYMBOLS = "!@#$%^&*"
RATING_MIN = 1
RATING_MAX = 5


def check_name(value: str) -> str:
    if len(value) < NAME_MIN_LENGTH:
        raise ValueError(f"Name must be at least {NAME_MIN_LENGTH} characters")
    if len(value) > NAME_MAX_LENGTH:
        raise ValueError(f"Name must be at most {NAME_MAX_LENGTH} characters")
    return value


def check_email(value: str) -> str:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        raise ValueError("Invalid email address")
    return value


def check_address(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value) > ADDRESS_MAX_LENGTH:
        raise ValueError(f"Address must be at most {ADDRESS_MAX_LENGTH} characters")
    return value


def check_password(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not any("A" <= ch <= "Z" for ch in value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(ch in PASSWORD_SYMBOLS for ch in value):
        raise ValueError("Password must contain at least one special character")
    return value


def check_rating(value):
    message = f"Rating must be an integer between {RATING_MIN} and {RATING_MAX}"
    if isinstance(value, bool):
        raise ValueError(message)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise ValueError(message)
    if not isinstance(value, int) or not RATING_MIN <= value <= RATING_MAX:
        raise ValueError(message)
    return value


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON while using snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class SignupRequest(CamelModel):
    """Public self-registration; the account always gets the ``user`` role."""

    name: str
    email: str
    password: str
    address: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return check_name(value)

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, value: str) -> str:
        return check_email(value)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password(value)

    @field_validator("address")
    @classmethod
    def validate_address(cls, value: Optional[str]) -> Optional[str]:
        return check_address(value)


class UserCreate(SignupRequest):
    """Admin-side account creation with an explicit role."""

    role: Role = Role.USER


class LoginRequest(BaseModel):
    # the email address doubles as the username
    username: str
    password: str


class PasswordChange(CamelModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password(value)


class StoreCreate(CamelModel):
    name: str
    email: str
    address: str
    owner_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return check_name(value)

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, value: str) -> str:
        return check_email(value)

    @field_validator("address")
    @classmethod
    def validate_address(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Address is required")
        return check_address(value)


class RatingSubmit(CamelModel):
    rating: int

    @field_validator("rating", mode="before")
    @classmethod
    def validate_rating(cls, value):
        return check_rating(value)


class UserOut(CamelModel):
    """Public representation of an account; never carries the password hash."""

    id: int
    name: str
    email: str
    address: Optional[str] = None
    role: Role
    created_at: datetime
    average_rating: Optional[float] = None


class StoreOut(CamelModel):
    id: int
    name: str
    email: str
    address: str
    owner_id: Optional[int] = None
    created_at: datetime
    average_rating: Optional[float] = None
    my_rating: Optional[int] = None


class RatingOut(CamelModel):
    id: int
    user_id: int
    store_id: int
    rating: int
    created_at: datetime


class RaterEntry(CamelModel):
    user_name: str
    rating: int


class OwnerStoreSummary(CamelModel):
    """One row of the owner dashboard."""

    store_id: int
    store_name: str
    average_rating: float
    ratings: List[RaterEntry]


class PlatformStats(CamelModel):
    total_users: int
    total_stores: int
    total_ratings: int


class MessageResponse(BaseModel):
    message: str
