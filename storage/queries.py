"""Composable task filters over the mirror tables.

Each metadata predicate turns into an ``EXISTS`` sub-select against
``field_metadata`` so any number of them can be AND-ed onto one query::

    TaskQuery(completed=False, where=[
        meta_eq("energy_level", "low"),
        meta_eq("needs_supplies", False),
        meta_lte("time_estimate_minutes", 30),
    ])
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from sqlalchemy import String, and_, exists, func, type_coerce
from sqlmodel import select

from models.field_metadata import FieldMetadata, METADATA_FIELDS
from models.task import Task


def _check_field(field_name: str) -> str:
    if field_name not in METADATA_FIELDS:
        raise ValueError(f"Unknown metadata field: {field_name}")
    return field_name


def _json_text(value: Any) -> str:
    # Matches the serializer SQLAlchemy uses for JSON columns on SQLite.
    return json.dumps(value)


@dataclass(frozen=True)
class MetaPredicate:
    field_name: str
    op: str
    value: Any = None

    def clause(self):
        raw = type_coerce(FieldMetadata.value, String)
        conditions = [
            FieldMetadata.task_id == Task.id,
            FieldMetadata.field_name == self.field_name,
        ]
        if self.op == "eq":
            conditions.append(raw == _json_text(self.value))
        elif self.op == "in":
            conditions.append(raw.in_([_json_text(v) for v in self.value]))
        elif self.op == "lte":
            conditions.append(func.json_extract(raw, "$") <= self.value)
        elif self.op == "gte":
            conditions.append(func.json_extract(raw, "$") >= self.value)
        elif self.op in ("set", "missing"):
            conditions.append(raw.is_not(None))
            conditions.append(raw != "null")
        else:
            raise ValueError(f"Unsupported predicate op: {self.op}")

        clause = exists().where(and_(*conditions))
        return ~clause if self.op == "missing" else clause


def meta_eq(field_name: str, value: Any) -> MetaPredicate:
    return MetaPredicate(_check_field(field_name), "eq", value)


def meta_in(field_name: str, values: Sequence[Any]) -> MetaPredicate:
    return MetaPredicate(_check_field(field_name), "in", tuple(values))


def meta_lte(field_name: str, value: float) -> MetaPredicate:
    return MetaPredicate(_check_field(field_name), "lte", value)


def meta_gte(field_name: str, value: float) -> MetaPredicate:
    return MetaPredicate(_check_field(field_name), "gte", value)


def meta_is_set(field_name: str) -> MetaPredicate:
    return MetaPredicate(_check_field(field_name), "set")


def meta_missing(field_name: str) -> MetaPredicate:
    return MetaPredicate(_check_field(field_name), "missing")


class meta:
    """Operator-style builder: ``meta("size") == "small"``, ``meta("can_delegate").is_true()``."""

    __slots__ = ("field_name",)

    def __init__(self, field_name: str) -> None:
        self.field_name = _check_field(field_name)

    def __eq__(self, value: Any) -> MetaPredicate:  # type: ignore[override]
        return MetaPredicate(self.field_name, "eq", value)

    def __le__(self, value: float) -> MetaPredicate:
        return MetaPredicate(self.field_name, "lte", value)

    def __ge__(self, value: float) -> MetaPredicate:
        return MetaPredicate(self.field_name, "gte", value)

    __hash__ = None  # type: ignore[assignment]

    def is_true(self) -> MetaPredicate:
        return MetaPredicate(self.field_name, "eq", True)

    def is_false(self) -> MetaPredicate:
        return MetaPredicate(self.field_name, "eq", False)

    def in_(self, values: Sequence[Any]) -> MetaPredicate:
        return MetaPredicate(self.field_name, "in", tuple(values))

    def exists(self) -> MetaPredicate:
        return MetaPredicate(self.field_name, "set")

    def missing(self) -> MetaPredicate:
        return MetaPredicate(self.field_name, "missing")


@dataclass
class TaskQuery:
    project_id: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[int] = None
    completed: Optional[bool] = None
    where: List[MetaPredicate] = field(default_factory=list)
    limit: Optional[int] = None

    def and_(self, *predicates: MetaPredicate) -> "TaskQuery":
        return TaskQuery(
            project_id=self.project_id,
            category=self.category,
            priority=self.priority,
            completed=self.completed,
            where=[*self.where, *predicates],
            limit=self.limit,
        )

    def statement(self):
        stmt = select(Task)
        if self.project_id is not None:
            stmt = stmt.where(Task.project_id == self.project_id)
        if self.priority is not None:
            stmt = stmt.where(Task.priority == self.priority)
        if self.completed is not None:
            stmt = stmt.where(Task.is_completed == self.completed)
        if self.category is not None:
            stmt = stmt.where(meta_eq("category", self.category).clause())
        for predicate in self.where:
            stmt = stmt.where(predicate.clause())
        stmt = stmt.order_by(Task.priority.desc(), Task.created_at.asc(), Task.id.asc())
        if self.limit:
            stmt = stmt.limit(self.limit)
        return stmt


__all__ = [
    "MetaPredicate",
    "TaskQuery",
    "meta",
    "meta_eq",
    "meta_gte",
    "meta_in",
    "meta_is_set",
    "meta_lte",
    "meta_missing",
]
