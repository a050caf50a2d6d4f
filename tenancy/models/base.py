"""Shared base fields for all models."""

from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, LargeBinary
from sqlmodel import Field, SQLModel

from tenancy.core.identity import KEY_LENGTH


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def key_column(foreign_key: str | None = None, **kwargs) -> Column:
    """16-byte identity key column, optionally referencing another table."""
    args = []
    if foreign_key is not None:
        args.append(ForeignKey(foreign_key, ondelete="CASCADE"))
    kwargs.setdefault("nullable", False)
    return Column(LargeBinary(KEY_LENGTH), *args, **kwargs)


class TimestampMixin(SQLModel):
    """Created / updated timestamps injected into every table."""

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)
