from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from crm_backend.app.models import CustomerCreateRequest, OrderCreateRequest, utc_now
from crm_backend.app.services.rules import (
    MAX_INACTIVE_DAYS,
    MAX_RULE_DEPTH,
    Combinator,
    RuleCondition,
    RuleGroup,
    RuleValidationError,
    parse_rule_tree,
)


def _emails(members) -> list[str]:
    return sorted(member.email for member in members)


def test_parse_accepts_dashboard_spelling_and_aliases() -> None:
    tree = parse_rule_tree(
        {
            "condition": "or",
            "rules": [
                {"field": "totalSpent", "operator": "==", "value": "1000"},
                {"field": "purchaseCount", "operator": ">=", "value": 2},
            ],
        }
    )
    assert isinstance(tree, RuleGroup)
    assert tree.combinator is Combinator.any_of
    assert tree.children == (
        RuleCondition(field="total_spent", operator="=", value=1000.0),
        RuleCondition(field="order_count", operator=">=", value=2.0),
    )


@pytest.mark.parametrize(
    "raw",
    [
        {"field": "email", "operator": "=", "value": "x@example.com"},
        {"field": "total_spent", "operator": "LIKE", "value": 10},
        {"field": "total_spent", "operator": ">", "value": "lots"},
        {"field": "visit_count", "operator": ">", "value": True},
        {"field": "last_active", "operator": ">", "value": "yesterday"},
        {"field": "inactive_days", "operator": ">", "value": 1e12},
        {"field": "lastActiveDaysAgo", "operator": ">", "value": -1},
        {"field": "total_spent", "operator": ">", "value": 10**400},
        {"field": "last_active", "operator": ">", "value": "0001-01-01T00:00:00+01:00"},
        {"field": "last_active", "operator": "<", "value": "9999-12-31T23:59:59-01:00"},
        {"combinator": "XOR", "children": []},
        {"combinator": "AND", "children": "nope"},
        {"name": "no shape"},
        ["not", "an", "object"],
    ],
)
def test_parse_rejects_malformed_nodes(raw) -> None:
    with pytest.raises(RuleValidationError):
        parse_rule_tree(raw)


def test_parse_caps_nesting_depth() -> None:
    node: dict = {"field": "visit_count", "operator": ">", "value": 0}
    for _ in range(MAX_RULE_DEPTH):
        node = {"combinator": "AND", "children": [node]}
    with pytest.raises(RuleValidationError):
        parse_rule_tree(node)


def test_strict_and_inclusive_comparisons(seeded_store) -> None:
    strict = seeded_store.preview_segment(
        {
            "combinator": "AND",
            "children": [
                {"field": "total_spent", "operator": ">", "value": 1000},
                {"field": "visit_count", "operator": "<", "value": 5},
            ],
        }
    )
    assert _emails(strict) == ["meera@example.com"]

    inclusive = seeded_store.preview_segment(
        {
            "combinator": "AND",
            "children": [
                {"field": "total_spent", "operator": ">", "value": 1000},
                {"field": "visit_count", "operator": "<=", "value": 5},
            ],
        }
    )
    assert _emails(inclusive) == ["asha@example.com", "meera@example.com"]


def test_or_group_and_nested_groups(seeded_store) -> None:
    members = seeded_store.preview_segment(
        {
            "combinator": "OR",
            "children": [
                {"field": "total_spent", "operator": "<", "value": 500},
                {
                    "combinator": "AND",
                    "children": [
                        {"field": "total_spent", "operator": ">=", "value": 2000},
                        {"field": "visit_count", "operator": "=", "value": 1},
                    ],
                },
            ],
        }
    )
    assert _emails(members) == ["meera@example.com", "ravi@example.com"]


def test_empty_group_matches_nobody(seeded_store) -> None:
    assert seeded_store.preview_segment({"combinator": "AND", "children": []}) == []
    assert seeded_store.preview_segment({"combinator": "OR", "children": []}) == []


def test_non_numeric_values_never_reach_the_query(seeded_store) -> None:
    with pytest.raises(RuleValidationError):
        seeded_store.preview_segment(
            {"field": "total_spent", "operator": ">", "value": "0; DROP TABLE customers"}
        )
    everyone = seeded_store.preview_segment({"field": "total_spent", "operator": ">=", "value": 0})
    assert len(everyone) == 3


def test_recency_and_last_active_fields(store) -> None:
    now = utc_now()
    store.create_customer(
        CustomerCreateRequest(name="Recent", email="recent@example.com", last_active=now - timedelta(days=2))
    )
    store.create_customer(
        CustomerCreateRequest(name="Lapsed", email="lapsed@example.com", last_active=now - timedelta(days=45))
    )
    store.create_customer(CustomerCreateRequest(name="Never", email="never@example.com"))

    lapsed = store.preview_segment({"field": "lastActiveDaysAgo", "operator": ">", "value": 30})
    assert _emails(lapsed) == ["lapsed@example.com"]

    active = store.preview_segment({"field": "inactive_days", "operator": "<=", "value": 7})
    assert _emails(active) == ["recent@example.com"]

    cutoff = (now - timedelta(days=10)).isoformat() + "Z"
    since = store.preview_segment({"field": "last_active", "operator": ">", "value": cutoff})
    assert _emails(since) == ["recent@example.com"]


def test_order_count_field(store) -> None:
    buyer = store.create_customer(CustomerCreateRequest(name="Buyer", email="buyer@example.com"))
    store.create_customer(CustomerCreateRequest(name="Browser", email="browser@example.com"))
    for amount in (120, 80):
        store.create_order(
            OrderCreateRequest(customer_id=buyer.id, amount=amount, order_date=datetime(2026, 1, 5))
        )

    repeat = store.preview_segment({"field": "orderCount", "operator": ">=", "value": 2})
    assert _emails(repeat) == ["buyer@example.com"]

    none = store.preview_segment({"field": "order_count", "operator": "=", "value": 0})
    assert _emails(none) == ["browser@example.com"]


def test_out_of_range_values_are_rejected_over_http(client) -> None:
    segment = client.post(
        "/segments",
        json={
            "user_id": "user-1",
            "name": "Lapsed forever",
            "rules": {"field": "inactive_days", "operator": ">", "value": 1e12},
        },
    )
    assert segment.status_code == 400

    preview = client.post(
        "/segments/preview",
        json={
            "rules": {
                "field": "last_active",
                "operator": ">",
                "value": "0001-01-01T00:00:00+01:00",
            }
        },
    )
    assert preview.status_code == 400


def test_inactive_days_upper_bound_still_builds(seeded_store) -> None:
    members = seeded_store.preview_segment(
        {"field": "inactive_days", "operator": ">=", "value": MAX_INACTIVE_DAYS}
    )
    assert members == []
