"""User model and per-user meta."""

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

from tenancy.models.base import TimestampMixin, key_column


class User(TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    id: bytes = Field(sa_column=key_column(primary_key=True))
    email: str = Field(max_length=320, nullable=False, unique=True, index=True)
    password: str = Field(nullable=False)  # argon2 hash
    salt: str = Field(max_length=32, nullable=False)
    meta: str | None = Field(default=None, sa_column=Column(Text, nullable=True))  # JSON object
    enabled: bool = Field(default=False)


class UserMeta(TimestampMixin, SQLModel, table=True):
    """Key/value meta owned by a user.

    Ids starting with ``00-`` are reserved for internal records such as a
    pending email verification.
    """

    __tablename__ = "user_meta"

    id: str = Field(max_length=255, primary_key=True)
    user_id: bytes = Field(sa_column=key_column("users.id", primary_key=True))
    meta_value: str = Field(sa_column=Column(Text, nullable=False))  # JSON

