from __future__ import annotations


def test_create_customer_and_order_then_list_details(client) -> None:
    created = client.post(
        "/customers",
        json={
            "name": "Kiran",
            "email": "Kiran@Example.com",
            "phone": "9000011111",
            "total_spent": 540.5,
            "visit_count": 3,
            "last_active": "2026-09-01T10:00:00Z",
        },
    )
    assert created.status_code == 201
    customer = created.json()["customer"]
    assert customer["id"].startswith("cus_")
    assert customer["email"] == "kiran@example.com"

    for amount, day in ((120.0, "2026-09-01"), (80.0, "2026-09-20")):
        order = client.post(
            "/orders",
            json={"customer_id": customer["id"], "amount": amount, "order_date": f"{day}T09:00:00"},
        )
        assert order.status_code == 201
        assert order.json()["order"]["id"].startswith("ord_")

    details = client.get("/customers/details")
    assert details.status_code == 200
    rows = details.json()
    assert len(rows) == 1
    assert rows[0]["id"] == customer["id"]
    assert [item["amount"] for item in rows[0]["orders"]] == [80.0, 120.0]


def test_customer_without_orders_is_listed_with_empty_orders(client) -> None:
    client.post("/customers", json={"name": "Solo", "email": "solo@example.com"})
    rows = client.get("/customers/details").json()
    assert rows[0]["orders"] == []


def test_duplicate_email_conflicts(client) -> None:
    first = client.post("/customers", json={"name": "A", "email": "dup@example.com"})
    assert first.status_code == 201
    second = client.post("/customers", json={"name": "B", "email": "DUP@example.com"})
    assert second.status_code == 409
    assert "email already exists" in second.json()["detail"]


def test_order_for_unknown_customer_is_not_found(client) -> None:
    response = client.post("/orders", json={"customer_id": "cus_missing", "amount": 10})
    assert response.status_code == 404


def test_invalid_customer_payload(client) -> None:
    response = client.post("/customers", json={"name": "Neg", "email": "neg@example.com", "total_spent": -5})
    assert response.status_code == 400
    assert response.json()["fields"] == ["total_spent"]
