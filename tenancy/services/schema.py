"""Declarative per-resource attribute schema.

Each resource type declares its attributes once: which are required,
writable, externally selectable, secret, JSON-encoded or identity keys, and
which storage column backs them. Models consult the schema instead of
carrying ad hoc attribute lists.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from email_validator import EmailNotValidError, validate_email

from tenancy.core import identity


def _is_email(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def parse_datetime(value: Any) -> datetime | None:
    """ISO 8601 string or datetime as naive UTC, or None if it is neither."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


RULES: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool) or (type(v) is int and v in (0, 1)),
    "object": lambda v: isinstance(v, dict),
    "list": lambda v: isinstance(v, list),
    "email": _is_email,
    "uuid": identity.is_valid,
    "datetime": lambda v: parse_datetime(v) is not None,
}


def check_rule(rule: str, value: Any) -> bool:
    return RULES[rule](value)


@dataclass(frozen=True)
class Attribute:
    rule: str | None = None
    required: bool = False
    writable: bool = True
    selectable: bool = True
    secret: bool = False
    json: bool = False
    key: bool = False
    column: str | None = None


class ResourceSchema:
    def __init__(self, name: str, attributes: Mapping[str, Attribute]) -> None:
        for attr_name, attr in attributes.items():
            if attr.writable and attr.rule is None:
                raise ValueError(f"{name}.{attr_name}: writable attribute needs a rule")
            if attr.rule is not None and attr.rule not in RULES:
                raise ValueError(f"{name}.{attr_name}: unknown rule {attr.rule!r}")
            if attr.required and not attr.writable:
                raise ValueError(f"{name}.{attr_name}: required attribute must be writable")
        self.name = name
        self.attributes = dict(attributes)

    @property
    def required(self) -> list[str]:
        return [n for n, a in self.attributes.items() if a.required]

    @property
    def allowed(self) -> list[str]:
        return [n for n, a in self.attributes.items() if a.writable]

    @property
    def selectable(self) -> list[str]:
        return [n for n, a in self.attributes.items() if a.selectable]

    @property
    def json_columns(self) -> list[str]:
        return [n for n, a in self.attributes.items() if a.json]

    @property
    def secret(self) -> list[str]:
        return [n for n, a in self.attributes.items() if a.secret]

    def column(self, name: str) -> str:
        """Storage column backing an external attribute name."""
        return self.attributes[name].column or name

    def missing(self, attrs: Mapping[str, Any]) -> list[str]:
        return [n for n in self.required if n not in attrs]

    def disallowed(self, attrs: Mapping[str, Any]) -> list[str]:
        allowed = set(self.allowed)
        return [n for n in attrs if n not in allowed]

    def invalid(self, attrs: Mapping[str, Any]) -> list[str]:
        """Names of allowed attributes whose value fails their rule."""
        bad = []
        for name, value in attrs.items():
            attr = self.attributes.get(name)
            if attr is None or attr.rule is None:
                continue
            if not check_rule(attr.rule, value):
                bad.append(name)
        return bad

    def only_allowed(self, attrs: Mapping[str, Any]) -> dict[str, Any]:
        allowed = set(self.allowed)
        return {k: v for k, v in attrs.items() if k in allowed}

    def redact(self, attrs: Mapping[str, Any], sentinel: str = "****") -> dict[str, Any]:
        """Copy of ``attrs`` with every secret attribute replaced by ``sentinel``."""
        secret = set(self.secret)
        return {k: (sentinel if k in secret else v) for k, v in attrs.items()}


def validate_meta(meta: Any, rules: Mapping[str, str]) -> bool:
    """Every field in ``rules`` must be present in ``meta`` and pass its rule."""
    if not isinstance(meta, dict):
        return False
    for field, rule in rules.items():
        if field not in meta or not check_rule(rule, meta[field]):
            return False
    return True
