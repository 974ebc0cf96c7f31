from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.sql.elements import ColumnElement

from crm_backend.app.errors import StoreConflictError, StoreNotFoundError
from crm_backend.app.models import DeliveryLogRecord, DeliveryStatus, ReceiptResult, new_id
from crm_backend.app.persistence import CrmDatabase

ALLOWED_TRANSITIONS = {
    DeliveryStatus.pending: {
        DeliveryStatus.claimed,
        DeliveryStatus.sent,
        DeliveryStatus.failed,
    },
    DeliveryStatus.claimed: {
        DeliveryStatus.pending,
        DeliveryStatus.sent,
        DeliveryStatus.failed,
    },
    DeliveryStatus.sent: set(),
    DeliveryStatus.failed: set(),
}

TERMINAL_STATUSES = frozenset({DeliveryStatus.sent, DeliveryStatus.failed})


class DeliveryTransitionError(StoreConflictError):
    pass


def _to_record(row) -> DeliveryLogRecord:
    return DeliveryLogRecord(
        id=row.id,
        campaign_id=row.campaign_id,
        customer_id=row.customer_id,
        status=DeliveryStatus(row.status),
        claim_token=row.claim_token,
        claimed_at=row.claimed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _claimable(table, *, now: datetime, lease_seconds: int) -> ColumnElement[bool]:
    lease_expired_before = now - timedelta(seconds=lease_seconds)
    return or_(
        table.c.status == DeliveryStatus.pending.value,
        and_(
            table.c.status == DeliveryStatus.claimed.value,
            table.c.claimed_at < lease_expired_before,
        ),
    )


def insert_pending(
    conn: Connection,
    db: CrmDatabase,
    *,
    campaign_id: str,
    customer_ids: Sequence[str],
    now: datetime,
) -> int:
    if not customer_ids:
        return 0
    conn.execute(
        db.communication_log.insert(),
        [
            {
                "id": new_id("dlv"),
                "campaign_id": campaign_id,
                "customer_id": customer_id,
                "status": DeliveryStatus.pending.value,
                "claim_token": None,
                "claimed_at": None,
                "created_at": now,
                "updated_at": now,
            }
            for customer_id in customer_ids
        ],
    )
    return len(customer_ids)


def claim_batch(
    conn: Connection,
    db: CrmDatabase,
    *,
    limit: int,
    claim_token: str,
    now: datetime,
    lease_seconds: int,
) -> list[DeliveryLogRecord]:
    """
    Leases up to ``limit`` claimable rows to ``claim_token``, oldest first.

    The candidate ids and the status guard live in one UPDATE, so a row that a
    concurrent claimer took between the subquery and the write is skipped
    rather than claimed twice.
    """
    log = db.communication_log
    candidates_table = log.alias("candidates")
    candidates = (
        select(candidates_table.c.id)
        .where(_claimable(candidates_table, now=now, lease_seconds=lease_seconds))
        .order_by(candidates_table.c.created_at, candidates_table.c.id)
        .limit(limit)
    )
    conn.execute(
        update(log)
        .where(log.c.id.in_(candidates))
        .where(_claimable(log, now=now, lease_seconds=lease_seconds))
        .values(
            status=DeliveryStatus.claimed.value,
            claim_token=claim_token,
            claimed_at=now,
            updated_at=now,
        )
    )
    rows = conn.execute(
        select(log)
        .where(log.c.claim_token == claim_token)
        .where(log.c.status == DeliveryStatus.claimed.value)
        .order_by(log.c.created_at, log.c.id)
    ).all()
    return [_to_record(row) for row in rows]


def release_claims(
    conn: Connection,
    db: CrmDatabase,
    *,
    claim_token: str,
    now: datetime,
) -> int:
    log = db.communication_log
    result = conn.execute(
        update(log)
        .where(log.c.claim_token == claim_token)
        .where(log.c.status == DeliveryStatus.claimed.value)
        .values(
            status=DeliveryStatus.pending.value,
            claim_token=None,
            claimed_at=None,
            updated_at=now,
        )
    )
    return result.rowcount or 0


def get_entry(
    conn: Connection,
    db: CrmDatabase,
    *,
    campaign_id: str,
    customer_id: str,
) -> Optional[DeliveryLogRecord]:
    log = db.communication_log
    row = conn.execute(
        select(log).where(log.c.campaign_id == campaign_id).where(log.c.customer_id == customer_id)
    ).first()
    return _to_record(row) if row else None


def list_entries(
    conn: Connection,
    db: CrmDatabase,
    *,
    campaign_id: str,
) -> list[DeliveryLogRecord]:
    log = db.communication_log
    rows = conn.execute(
        select(log).where(log.c.campaign_id == campaign_id).order_by(log.c.created_at, log.c.id)
    ).all()
    return [_to_record(row) for row in rows]


def apply_receipt(
    conn: Connection,
    db: CrmDatabase,
    *,
    campaign_id: str,
    customer_id: str,
    status: DeliveryStatus,
    now: datetime,
) -> ReceiptResult:
    if status not in TERMINAL_STATUSES:
        raise DeliveryTransitionError(f"receipt status must be terminal, got {status.value}")

    entry = get_entry(conn, db, campaign_id=campaign_id, customer_id=customer_id)
    if entry is None:
        raise StoreNotFoundError(
            f"delivery entry not found: campaign={campaign_id} customer={customer_id}"
        )
    if entry.status in TERMINAL_STATUSES:
        if entry.status == status:
            return ReceiptResult.unchanged
        raise DeliveryTransitionError(
            f"delivery entry {entry.id} is already {entry.status.value}; "
            f"cannot change to {status.value}"
        )
    if status not in ALLOWED_TRANSITIONS[entry.status]:
        raise DeliveryTransitionError(
            f"invalid transition {entry.status.value} -> {status.value} for {entry.id}"
        )

    log = db.communication_log
    result = conn.execute(
        update(log)
        .where(log.c.id == entry.id)
        .where(log.c.status == entry.status.value)
        .values(status=status.value, updated_at=now)
    )
    if result.rowcount != 1:
        raise DeliveryTransitionError(f"delivery entry {entry.id} changed concurrently")
    return ReceiptResult.updated
