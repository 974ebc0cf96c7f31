from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.exc import DBAPIError

from crm_backend.app.errors import StoreError, StoreUnavailableError, StoreValidationError
from crm_backend.app.models import MAX_RECEIPT_BATCH, DeliveryStatus, ReceiptResult, utc_now
from crm_backend.app.persistence import CrmDatabase
from crm_backend.app.services import delivery_log

logger = logging.getLogger("crm.receipts")

RECEIPT_STATUSES = {DeliveryStatus.sent.value, DeliveryStatus.failed.value}


@dataclass(frozen=True)
class ParsedReceipt:
    campaign_id: str
    customer_id: str
    status: DeliveryStatus


@dataclass(frozen=True)
class BatchReceiptResult:
    updated: int
    unchanged: int


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_receipt(campaign_id: Any, customer_id: Any, status: Any) -> ParsedReceipt:
    campaign = _text(campaign_id)
    customer = _text(customer_id)
    status_value = _text(getattr(status, "value", status))
    if not campaign or not customer or not status_value:
        raise StoreValidationError("campaign_id, customer_id and status are required")
    status_value = status_value.upper()
    if status_value not in RECEIPT_STATUSES:
        raise StoreValidationError(f"receipt status must be SENT or FAILED, got {status_value}")
    return ParsedReceipt(
        campaign_id=campaign,
        customer_id=customer,
        status=DeliveryStatus(status_value),
    )


class ReceiptService:
    """
    Moves delivery-log rows from PENDING/CLAIMED to SENT or FAILED.

    A terminal row never changes again. Reporting the status it already has is
    a no-op, which makes replaying a batch harmless; reporting a different one
    raises ``DeliveryTransitionError``.
    """

    def __init__(self, database: CrmDatabase) -> None:
        self.database = database

    def update_one(self, campaign_id: Any, customer_id: Any, status: Any) -> ReceiptResult:
        receipt = parse_receipt(campaign_id, customer_id, status)
        try:
            with self.database.engine.begin() as conn:
                result = delivery_log.apply_receipt(
                    conn,
                    self.database,
                    campaign_id=receipt.campaign_id,
                    customer_id=receipt.customer_id,
                    status=receipt.status,
                    now=utc_now(),
                )
        except DBAPIError as exc:
            logger.warning(
                "receipt_update_failed campaign_id=%s customer_id=%s error=%s",
                receipt.campaign_id,
                receipt.customer_id,
                exc,
            )
            raise StoreUnavailableError("storage unavailable") from exc
        logger.info(
            "receipt_applied campaign_id=%s customer_id=%s status=%s result=%s",
            receipt.campaign_id,
            receipt.customer_id,
            receipt.status.value,
            result.value,
        )
        return result

    def update_batch(self, receipts: Any) -> BatchReceiptResult:
        if not isinstance(receipts, list):
            raise StoreValidationError("receipts must be a list")
        if not receipts:
            raise StoreValidationError("receipts must not be empty")
        if len(receipts) > MAX_RECEIPT_BATCH:
            raise StoreValidationError(f"receipts must hold at most {MAX_RECEIPT_BATCH} items")
        parsed = [self._parse_item(item) for item in receipts]

        now = utc_now()
        updated = 0
        unchanged = 0
        try:
            with self.database.engine.begin() as conn:
                for receipt in parsed:
                    result = delivery_log.apply_receipt(
                        conn,
                        self.database,
                        campaign_id=receipt.campaign_id,
                        customer_id=receipt.customer_id,
                        status=receipt.status,
                        now=now,
                    )
                    if result is ReceiptResult.updated:
                        updated += 1
                    else:
                        unchanged += 1
        except DBAPIError as exc:
            logger.warning("receipt_batch_rolled_back size=%s error=%s", len(parsed), exc)
            raise StoreUnavailableError("storage unavailable") from exc
        except StoreError as exc:
            logger.warning("receipt_batch_rejected size=%s error=%s", len(parsed), exc)
            raise

        logger.info(
            "receipt_batch_committed size=%s updated=%s unchanged=%s",
            len(parsed),
            updated,
            unchanged,
        )
        return BatchReceiptResult(updated=updated, unchanged=unchanged)

    @staticmethod
    def _parse_item(item: Any) -> ParsedReceipt:
        if isinstance(item, BaseModel):
            item = item.model_dump()
        if not isinstance(item, dict):
            raise StoreValidationError("each receipt must be an object")
        return parse_receipt(item.get("campaign_id"), item.get("customer_id"), item.get("status"))
