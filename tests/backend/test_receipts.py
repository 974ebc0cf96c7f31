from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from crm_backend.app.errors import StoreNotFoundError, StoreUnavailableError, StoreValidationError
from crm_backend.app.models import MAX_RECEIPT_BATCH, DeliveryStatus, ReceiptResult
from crm_backend.app.services import delivery_log
from crm_backend.app.services.delivery_log import DeliveryTransitionError
from crm_backend.app.services.receipts import ReceiptService


@pytest.fixture()
def campaign(seeded_store):
    segment, _ = seeded_store.create_segment(
        user_id="user-1",
        name="High spenders",
        rules={
            "combinator": "AND",
            "children": [
                {"field": "total_spent", "operator": ">", "value": 1000},
                {"field": "visit_count", "operator": "<=", "value": 5},
            ],
        },
    )
    created, _ = seeded_store.create_campaign(segment_id=segment.id, message="Hi")
    database = seeded_store.database
    with database.engine.connect() as conn:
        entries = delivery_log.list_entries(conn, database, campaign_id=created.id)
    return created.id, [entry.customer_id for entry in entries]


@pytest.fixture()
def receipts(database) -> ReceiptService:
    return ReceiptService(database)


def _statuses(database, campaign_id: str) -> dict[str, DeliveryStatus]:
    with database.engine.connect() as conn:
        entries = delivery_log.list_entries(conn, database, campaign_id=campaign_id)
    return {entry.customer_id: entry.status for entry in entries}


def test_update_one_marks_row_sent(receipts, database, campaign) -> None:
    campaign_id, customers = campaign
    result = receipts.update_one(campaign_id, customers[0], "sent")
    assert result is ReceiptResult.updated
    assert _statuses(database, campaign_id)[customers[0]] is DeliveryStatus.sent


def test_terminal_status_cannot_flip(receipts, database, campaign) -> None:
    campaign_id, customers = campaign
    receipts.update_one(campaign_id, customers[0], "SENT")

    with pytest.raises(DeliveryTransitionError):
        receipts.update_one(campaign_id, customers[0], "FAILED")
    assert _statuses(database, campaign_id)[customers[0]] is DeliveryStatus.sent


def test_same_status_replay_is_a_no_op(receipts, database, campaign) -> None:
    campaign_id, customers = campaign
    batch = [
        {"campaign_id": campaign_id, "customer_id": customers[0], "status": "SENT"},
        {"campaign_id": campaign_id, "customer_id": customers[1], "status": "FAILED"},
    ]
    first = receipts.update_batch(batch)
    assert (first.updated, first.unchanged) == (2, 0)
    before = _statuses(database, campaign_id)

    replay = receipts.update_batch(batch)
    assert (replay.updated, replay.unchanged) == (0, 2)
    assert _statuses(database, campaign_id) == before


@pytest.mark.parametrize(
    "args",
    [
        ("", "cus_1", "SENT"),
        ("cmp_1", None, "SENT"),
        ("cmp_1", "cus_1", "PENDING"),
        ("cmp_1", "cus_1", "DELIVERED"),
    ],
)
def test_update_one_validates_input(receipts, args) -> None:
    with pytest.raises(StoreValidationError):
        receipts.update_one(*args)


def test_update_one_unknown_row(receipts, campaign) -> None:
    campaign_id, _ = campaign
    with pytest.raises(StoreNotFoundError):
        receipts.update_one(campaign_id, "cus_missing", "SENT")


@pytest.mark.parametrize("payload", [[], {"receipts": []}, "SENT", None])
def test_batch_must_be_a_non_empty_list(receipts, database, campaign, payload) -> None:
    campaign_id, _ = campaign
    with pytest.raises(StoreValidationError):
        receipts.update_batch(payload)
    assert set(_statuses(database, campaign_id).values()) == {DeliveryStatus.pending}


def test_batch_rolls_back_when_one_row_is_missing(receipts, database, campaign) -> None:
    campaign_id, customers = campaign
    with pytest.raises(StoreNotFoundError):
        receipts.update_batch(
            [
                {"campaign_id": campaign_id, "customer_id": customers[0], "status": "SENT"},
                {"campaign_id": campaign_id, "customer_id": "cus_missing", "status": "SENT"},
            ]
        )
    assert set(_statuses(database, campaign_id).values()) == {DeliveryStatus.pending}


def test_batch_rolls_back_on_storage_fault(receipts, database, campaign, monkeypatch) -> None:
    campaign_id, customers = campaign
    real_apply = delivery_log.apply_receipt
    calls = {"count": 0}

    def flaky_apply(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("UPDATE communication_log", {}, Exception("database is locked"))
        return real_apply(*args, **kwargs)

    monkeypatch.setattr(delivery_log, "apply_receipt", flaky_apply)
    with pytest.raises(StoreUnavailableError):
        receipts.update_batch(
            [
                {"campaign_id": campaign_id, "customer_id": customers[0], "status": "SENT"},
                {"campaign_id": campaign_id, "customer_id": customers[1], "status": "SENT"},
            ]
        )
    assert set(_statuses(database, campaign_id).values()) == {DeliveryStatus.pending}


def test_receipt_endpoints(client, customer_ids, high_spend_rules) -> None:
    segment_id = client.post(
        "/segments", json={"user_id": "user-1", "name": "Seg", "rules": high_spend_rules}
    ).json()["segment"]["id"]
    campaign_id = client.post(
        "/campaigns", json={"segment_id": segment_id, "message": "Hi"}
    ).json()["campaign"]["id"]

    single = client.post(
        "/receipt",
        json={"campaign_id": campaign_id, "customer_id": customer_ids[0], "status": "SENT"},
    )
    assert single.status_code == 200
    assert single.json() == {"message": "status updated", "result": "updated"}

    flip = client.post(
        "/receipt",
        json={"campaign_id": campaign_id, "customer_id": customer_ids[0], "status": "FAILED"},
    )
    assert flip.status_code == 409

    batch = client.post(
        "/receipt/batch",
        json={
            "receipts": [
                {"campaign_id": campaign_id, "customer_id": customer_ids[0], "status": "SENT"},
                {"campaign_id": campaign_id, "customer_id": customer_ids[2], "status": "FAILED"},
            ]
        },
    )
    assert batch.status_code == 200
    assert batch.json() == {"message": "batch update successful", "updated": 1, "unchanged": 1}

    missing = client.post(
        "/receipt",
        json={"campaign_id": campaign_id, "customer_id": customer_ids[1], "status": "SENT"},
    )
    assert missing.status_code == 404


def test_batch_endpoint_rejects_bad_payloads(client) -> None:
    empty = client.post("/receipt/batch", json={"receipts": []})
    assert empty.status_code == 400
    assert empty.json()["fields"] == ["receipts"]

    not_a_list = client.post("/receipt/batch", json={"receipts": "SENT"})
    assert not_a_list.status_code == 400

    bad_status = client.post(
        "/receipt/batch",
        json={"receipts": [{"campaign_id": "cmp_1", "customer_id": "cus_1", "status": "LOST"}]},
    )
    assert bad_status.status_code == 400
    assert bad_status.json()["fields"] == ["receipts.0.status"]


def test_batch_size_is_capped(client, receipts) -> None:
    item = {"campaign_id": "cmp_1", "customer_id": "cus_1", "status": "SENT"}
    oversized = [dict(item, customer_id=f"cus_{index}") for index in range(MAX_RECEIPT_BATCH + 1)]

    response = client.post("/receipt/batch", json={"receipts": oversized})
    assert response.status_code == 400
    assert response.json()["fields"] == ["receipts"]

    with pytest.raises(StoreValidationError):
        receipts.update_batch(oversized)
