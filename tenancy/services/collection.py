"""Generic collection queries: field selection, filtering, sorting, paging.

Query args (all optional)::

    {
        "select": ["email", "createdAt"],
        "filter": {"email": {"sw": "admin"}, "enabled": {"eq": True}},
        "sort": ["-createdAt", "email"],
        "limit": 25,
        "page": 2,
    }

Field names are the external attribute names declared in the resource
schema; they are mapped to storage columns here and never reach SQL as text.
"""

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core import identity
from tenancy.errors import BadRequest, InvalidIdentityKey, NotFound
from tenancy.services.schema import ResourceSchema, check_rule, parse_datetime

DEFAULT_LIMIT = 100
MAX_LIMIT = 500

_OPERATORS = {
    "eq": lambda col, v: col == v,
    "ne": lambda col, v: col != v,
    "lt": lambda col, v: col < v,
    "gt": lambda col, v: col > v,
    "le": lambda col, v: col <= v,
    "ge": lambda col, v: col >= v,
    "sw": lambda col, v: col.startswith(str(v), autoescape=True),
    "has": lambda col, v: col.contains(str(v), autoescape=True),
}

# Pattern operators only apply to text attributes
_TEXT_OPERATORS = {"sw", "has"}
_TEXT_RULES = {"string", "email"}


def _selected(schema: ResourceSchema, fields: Iterable[str] | None, id_field: str) -> list[str]:
    fields = list(fields or [])
    if not fields or "*" in fields:
        return schema.selectable
    unknown = [f for f in fields if f not in schema.selectable]
    if unknown:
        raise BadRequest(f"Invalid field(s): {', '.join(unknown)}")
    if id_field not in fields:
        fields.append(id_field)
    return fields


def _column(table, schema: ResourceSchema, name: str):
    return getattr(table, schema.column(name))


def _filter_value(schema: ResourceSchema, name: str, op: str, value: Any) -> Any:
    """Filter value checked against the attribute's rule and converted for binding."""
    attr = schema.attributes[name]
    if attr.json:
        raise BadRequest(f"Field cannot be filtered: {name}")
    if op in _TEXT_OPERATORS and attr.rule not in _TEXT_RULES:
        raise BadRequest(f"Invalid filter operator for {name}: {op}")
    if attr.key:
        try:
            return identity.encode(value)
        except InvalidIdentityKey as exc:
            raise BadRequest(f"Invalid filter value for {name}") from exc

    if attr.rule == "datetime":
        value = parse_datetime(value)
        valid = value is not None
    elif attr.rule in _TEXT_RULES:
        valid = isinstance(value, str)
    else:
        valid = attr.rule is not None and check_rule(attr.rule, value)
    if not valid:
        raise BadRequest(f"Invalid filter value for {name}")
    return bool(value) if attr.rule == "boolean" else value


def _conditions(table, schema: ResourceSchema, filters: Mapping[str, Mapping[str, Any]]) -> list:
    conditions = []
    for name, ops in filters.items():
        if name not in schema.selectable:
            raise BadRequest(f"Invalid filter field: {name}")
        if not isinstance(ops, Mapping):
            raise BadRequest(f"Invalid filter for {name}")
        for op, value in ops.items():
            if op not in _OPERATORS:
                raise BadRequest(f"Invalid filter operator: {op}")
            col = _column(table, schema, name)
            conditions.append(_OPERATORS[op](col, _filter_value(schema, name, op, value)))
    return conditions


def _ordering(table, schema: ResourceSchema, sort: Iterable[str]) -> list:
    order = []
    for item in sort:
        desc = item.startswith("-")
        name = item.lstrip("-+")
        if name not in schema.selectable:
            raise BadRequest(f"Invalid sort field: {name}")
        col = _column(table, schema, name)
        order.append(col.desc() if desc else col.asc())
    return order


def decode_row(schema: ResourceSchema, row: Mapping[str, Any]) -> dict[str, Any]:
    """Storage row -> external representation."""
    result = {}
    for name, value in row.items():
        attr = schema.attributes.get(name)
        if attr is not None and value is not None:
            if attr.key:
                value = identity.decode(value)
            elif attr.json:
                value = json.loads(value)
        result[name] = value
    return result


def _base_statement(table, schema, fields, where, joins):
    stmt = select(*[_column(table, schema, f).label(f) for f in fields]).select_from(table)
    for target, onclause in joins:
        stmt = stmt.join(target, onclause)
    for condition in where:
        stmt = stmt.where(condition)
    return stmt


async def query_collection(
    session: AsyncSession,
    table,
    schema: ResourceSchema,
    args: Mapping[str, Any] | None = None,
    *,
    where: Iterable = (),
    joins: Iterable[tuple] = (),
    id_field: str = "id",
) -> dict[str, Any]:
    args = args or {}
    fields = _selected(schema, args.get("select"), id_field)

    try:
        limit = DEFAULT_LIMIT if args.get("limit") is None else int(args["limit"])
        page = 1 if args.get("page") is None else int(args["page"])
    except (TypeError, ValueError) as exc:
        raise BadRequest("Invalid limit or page") from exc
    if limit < 1 or limit > MAX_LIMIT or page < 1:
        raise BadRequest("Invalid limit or page")

    stmt = _base_statement(table, schema, fields, list(where), list(joins))
    stmt = stmt.where(*_conditions(table, schema, args.get("filter") or {}))

    total = (
        await session.execute(select(func.count()).select_from(stmt.subquery()))
    ).scalar_one()

    order = _ordering(table, schema, args.get("sort") or [])
    stmt = stmt.order_by(*order).limit(limit).offset((page - 1) * limit)
    rows = (await session.execute(stmt)).mappings().all()
    data = [decode_row(schema, row) for row in rows]

    return {
        "data": data,
        "meta": {
            "count": len(data),
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
            "page_size": limit,
            "page": page,
        },
    }


async def query_single(
    session: AsyncSession,
    table,
    schema: ResourceSchema,
    fields: Iterable[str] | None = None,
    *,
    where: Iterable = (),
    joins: Iterable[tuple] = (),
    id_field: str = "id",
) -> dict[str, Any]:
    selected = _selected(schema, fields, id_field)
    stmt = _base_statement(table, schema, selected, list(where), list(joins)).limit(1)
    row = (await session.execute(stmt)).mappings().first()
    if row is None:
        raise NotFound("Resource does not exist")
    return decode_row(schema, row)
