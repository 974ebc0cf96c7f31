"""
Segment rule trees.

A tree is either a group ``{"combinator": "AND"|"OR", "children": [...]}`` or a
condition ``{"field": ..., "operator": ..., "value": ...}``. The dashboard sends
``condition``/``rules`` for groups, so both spellings are read.

Trees are parsed into immutable nodes first, then compiled into a SQLAlchemy
expression over the ``customers`` table. Values only ever travel as bound
parameters.
"""

from __future__ import annotations

import math
import operator
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Union

from sqlalchemy import Table, and_, false, func, not_, or_, select
from sqlalchemy.sql.elements import ColumnElement

from crm_backend.app.errors import StoreValidationError
from crm_backend.app.models import to_naive_utc, utc_now

MAX_RULE_DEPTH = 10
MAX_INACTIVE_DAYS = 36500

FIELD_ALIASES = {
    "total_spent": "total_spent",
    "totalSpent": "total_spent",
    "visit_count": "visit_count",
    "visitCount": "visit_count",
    "last_active": "last_active",
    "lastActive": "last_active",
    "inactive_days": "inactive_days",
    "lastActiveDaysAgo": "inactive_days",
    "order_count": "order_count",
    "orderCount": "order_count",
    "purchase_count": "order_count",
    "purchaseCount": "order_count",
}

DATETIME_FIELDS = {"last_active"}

OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    ">": operator.gt,
    "<": operator.lt,
    "=": operator.eq,
    ">=": operator.ge,
    "<=": operator.le,
    "!=": operator.ne,
}

OPERATOR_ALIASES = {"==": "="}

# "inactive for more than N days" means "last active before now - N days"
MIRRORED_OPERATORS = {">": "<", "<": ">", ">=": "<=", "<=": ">=", "=": "=", "!=": "!="}


class RuleValidationError(StoreValidationError):
    pass


class Combinator(str, Enum):
    all_of = "AND"
    any_of = "OR"


@dataclass(frozen=True)
class RuleCondition:
    field: str
    operator: str
    value: Union[float, datetime]


@dataclass(frozen=True)
class RuleGroup:
    combinator: Combinator
    children: tuple["RuleNode", ...]


RuleNode = Union[RuleGroup, RuleCondition]


def parse_rule_tree(raw: Any) -> RuleNode:
    return _parse_node(raw, depth=1)


def _parse_node(raw: Any, *, depth: int) -> RuleNode:
    if depth > MAX_RULE_DEPTH:
        raise RuleValidationError(f"rule tree is nested deeper than {MAX_RULE_DEPTH} levels")
    if not isinstance(raw, dict):
        raise RuleValidationError("rule node must be an object")
    if "field" in raw:
        return _parse_condition(raw)

    combinator = raw.get("combinator", raw.get("condition"))
    children = raw.get("children", raw.get("rules"))
    if combinator is None and children is None:
        raise RuleValidationError("rule node must be a group or a condition")
    if not isinstance(combinator, str) or combinator.strip().upper() not in {"AND", "OR"}:
        raise RuleValidationError("group combinator must be AND or OR")
    if not isinstance(children, list):
        raise RuleValidationError("group children must be a list")
    return RuleGroup(
        combinator=Combinator(combinator.strip().upper()),
        children=tuple(_parse_node(child, depth=depth + 1) for child in children),
    )


def _parse_condition(raw: dict[str, Any]) -> RuleCondition:
    field_raw = raw.get("field")
    field = FIELD_ALIASES.get(field_raw) if isinstance(field_raw, str) else None
    if field is None:
        raise RuleValidationError(f"unsupported rule field: {field_raw!r}")

    operator_raw = raw.get("operator")
    if not isinstance(operator_raw, str):
        raise RuleValidationError("rule operator must be a string")
    op = OPERATOR_ALIASES.get(operator_raw.strip(), operator_raw.strip())
    if op not in OPERATORS:
        raise RuleValidationError(f"unsupported rule operator: {operator_raw!r}")

    return RuleCondition(field=field, operator=op, value=_coerce_value(field, raw.get("value")))


def _coerce_value(field: str, value: Any) -> Union[float, datetime]:
    if field in DATETIME_FIELDS:
        return _coerce_datetime(field, value)

    if isinstance(value, bool):
        raise RuleValidationError(f"{field} expects a number")
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.strip())
        else:
            raise RuleValidationError(f"{field} expects a number")
    except (ValueError, OverflowError) as exc:
        raise RuleValidationError(f"{field} expects a number") from exc
    if not math.isfinite(number):
        raise RuleValidationError(f"{field} expects a finite number")
    if field == "inactive_days" and not 0 <= number <= MAX_INACTIVE_DAYS:
        raise RuleValidationError(f"{field} must be between 0 and {MAX_INACTIVE_DAYS}")
    return number


def _coerce_datetime(field: str, value: Any) -> datetime:
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise RuleValidationError(f"{field} expects an ISO-8601 datetime") from exc
    if not isinstance(value, datetime):
        raise RuleValidationError(f"{field} expects an ISO-8601 datetime")
    try:
        return to_naive_utc(value)
    except OverflowError as exc:
        raise RuleValidationError(f"{field} is out of range") from exc


def build_filter(
    node: RuleNode,
    *,
    customers: Table,
    orders: Table,
    now: Optional[datetime] = None,
) -> ColumnElement[bool]:
    reference = now or utc_now()
    return _compile(node, customers=customers, orders=orders, now=reference)


def _compile(
    node: RuleNode,
    *,
    customers: Table,
    orders: Table,
    now: datetime,
) -> ColumnElement[bool]:
    if isinstance(node, RuleCondition):
        return _compile_condition(node, customers=customers, orders=orders, now=now)

    clauses = [
        _compile(child, customers=customers, orders=orders, now=now) for child in node.children
    ]
    if not clauses:
        # an empty group targets nobody; everyone must be asked for explicitly
        return false()
    if node.combinator is Combinator.all_of:
        return and_(*clauses)
    return or_(*clauses)


def _compile_condition(
    condition: RuleCondition,
    *,
    customers: Table,
    orders: Table,
    now: datetime,
) -> ColumnElement[bool]:
    if condition.field == "inactive_days":
        last_active = customers.c.last_active
        cutoff = now - timedelta(days=float(condition.value))
        same_day = and_(last_active <= cutoff, last_active > cutoff - timedelta(days=1))
        if condition.operator == "=":
            return same_day
        if condition.operator == "!=":
            return and_(last_active.is_not(None), not_(same_day))
        return OPERATORS[MIRRORED_OPERATORS[condition.operator]](last_active, cutoff)

    if condition.field == "order_count":
        column = (
            select(func.count(orders.c.id))
            .where(orders.c.customer_id == customers.c.id)
            .scalar_subquery()
        )
    else:
        column = customers.c[condition.field]
    return OPERATORS[condition.operator](column, condition.value)
