"""
Campaign delivery worker.

One tick claims a bounded batch of delivery rows, simulates an outcome for each
row and hands the whole batch to the receipt service. A tick never raises: a
failed round releases its claims and the rows are picked up again later.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional, Protocol
from uuid import uuid4

from sqlalchemy.exc import DBAPIError

from crm_backend.app.models import DeliveryStatus, utc_now
from crm_backend.app.observability import MetricsRegistry
from crm_backend.app.persistence import CrmDatabase
from crm_backend.app.services import delivery_log
from crm_backend.app.services.receipt_client import (
    Receipt,
    ReceiptClient,
    ReceiptRejectedError,
    ReceiptServiceError,
)

logger = logging.getLogger("crm.worker")


class RandomSource(Protocol):
    def random(self) -> float: ...


@dataclass(frozen=True)
class TickResult:
    claimed: int
    sent: int = 0
    failed: int = 0
    ok: bool = True
    error: Optional[str] = None


class DeliveryWorker:
    def __init__(
        self,
        *,
        database: CrmDatabase,
        receipt_client: ReceiptClient,
        batch_size: int = 50,
        success_rate: float = 0.9,
        claim_lease_seconds: int = 60,
        rng: Optional[RandomSource] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.database = database
        self.receipt_client = receipt_client
        self.batch_size = batch_size
        self.success_rate = success_rate
        self.claim_lease_seconds = claim_lease_seconds
        self.metrics = metrics
        self._rng = rng or random.Random()

    def simulate_outcome(self) -> DeliveryStatus:
        if self._rng.random() < self.success_rate:
            return DeliveryStatus.sent
        return DeliveryStatus.failed

    def run_once(self) -> TickResult:
        claim_token = uuid4().hex
        try:
            with self.database.engine.begin() as conn:
                claimed = delivery_log.claim_batch(
                    conn,
                    self.database,
                    limit=self.batch_size,
                    claim_token=claim_token,
                    now=utc_now(),
                    lease_seconds=self.claim_lease_seconds,
                )
        except DBAPIError as exc:
            logger.warning("delivery_claim_failed error=%s", exc)
            self._record(ok=False)
            return TickResult(claimed=0, ok=False, error="storage unavailable")

        if not claimed:
            return TickResult(claimed=0)

        receipts = [
            Receipt(
                campaign_id=entry.campaign_id,
                customer_id=entry.customer_id,
                status=self.simulate_outcome(),
            )
            for entry in claimed
        ]
        sent = sum(1 for receipt in receipts if receipt.status is DeliveryStatus.sent)
        failed = len(receipts) - sent
        logger.info("delivery_batch_claimed claim_token=%s size=%s", claim_token, len(claimed))

        try:
            submission = self.receipt_client.submit_batch(receipts)
        except (ReceiptServiceError, ReceiptRejectedError) as exc:
            released = self._release(claim_token)
            logger.warning(
                "delivery_batch_failed claim_token=%s size=%s released=%s error=%s",
                claim_token,
                len(claimed),
                released,
                exc,
            )
            self._record(ok=False)
            return TickResult(claimed=len(claimed), ok=False, error=str(exc))
        except Exception as exc:
            released = self._release(claim_token)
            logger.exception(
                "delivery_batch_crashed claim_token=%s size=%s released=%s",
                claim_token,
                len(claimed),
                released,
            )
            self._record(ok=False)
            return TickResult(claimed=len(claimed), ok=False, error=str(exc))

        logger.info(
            "delivery_batch_complete claim_token=%s sent=%s failed=%s updated=%s unchanged=%s",
            claim_token,
            sent,
            failed,
            submission.updated,
            submission.unchanged,
        )
        self._record(ok=True, sent=sent, failed=failed)
        return TickResult(claimed=len(claimed), sent=sent, failed=failed)

    def _release(self, claim_token: str) -> int:
        try:
            with self.database.engine.begin() as conn:
                return delivery_log.release_claims(
                    conn,
                    self.database,
                    claim_token=claim_token,
                    now=utc_now(),
                )
        except DBAPIError as exc:
            # claims expire after the lease, so the rows still come back
            logger.warning("delivery_release_failed claim_token=%s error=%s", claim_token, exc)
            return 0

    def _record(self, *, ok: bool, sent: int = 0, failed: int = 0) -> None:
        if self.metrics is not None:
            self.metrics.record_tick(ok=ok, sent=sent, failed=failed)
