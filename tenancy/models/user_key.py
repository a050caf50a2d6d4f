"""User API keys bound to referer domains and source IPs."""

from datetime import datetime

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

from tenancy.models.base import TimestampMixin, key_column


class UserKey(TimestampMixin, SQLModel, table=True):
    __tablename__ = "user_keys"

    id: bytes = Field(sa_column=key_column(primary_key=True))
    user_id: bytes = Field(sa_column=key_column("users.id", index=True))

    # Human-readable label, e.g. "storefront-widget"
    name: str = Field(max_length=255, nullable=False)

    # SHA-256 hash of the raw key; the raw value is shown only once, at creation
    key_hash: str = Field(nullable=False, unique=True, index=True)

    # Prefix stored for identification (first 8 chars)
    key_prefix: str = Field(max_length=12, nullable=False)

    # JSON arrays; empty means unrestricted
    allowed_domains: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    allowed_ips: str = Field(default="[]", sa_column=Column(Text, nullable=False))

    rate_limit: int | None = Field(default=None)
    expires_at: datetime | None = Field(default=None)
    last_used_at: datetime | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class UserKeyCreate(SQLModel):
    name: str = Field(max_length=255)
    allowed_domains: list[str] = []
    allowed_ips: list[str] = []
    rate_limit: int | None = None
    expires_at: datetime | None = None


class UserKeyCreated(SQLModel):
    """Returned exactly once at creation time, raw key included."""
    id: str
    name: str
    key_prefix: str
    raw_key: str
