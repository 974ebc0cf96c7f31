from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from crm_backend.app.observability import MetricsRegistry
from crm_backend.app.persistence import CrmDatabase
from crm_backend.app.services.receipt_client import (
    HttpReceiptClient,
    LocalReceiptClient,
    ReceiptClient,
)
from crm_backend.app.services.receipts import ReceiptService
from crm_backend.app.services.scheduler import DeliveryScheduler
from crm_backend.app.services.worker import DeliveryWorker, RandomSource
from crm_backend.app.settings import Settings
from crm_backend.app.store import CrmStore


@dataclass
class AppContext:
    settings: Settings
    database: CrmDatabase
    store: CrmStore
    receipts: ReceiptService
    worker: DeliveryWorker
    scheduler: DeliveryScheduler
    metrics: MetricsRegistry

    def close(self) -> None:
        self.scheduler.stop()
        self.database.dispose()


def build_receipt_client(settings: Settings, receipts: ReceiptService) -> ReceiptClient:
    if settings.receipt_endpoint_url:
        return HttpReceiptClient(
            url=settings.receipt_endpoint_url,
            timeout_seconds=settings.receipt_timeout_seconds,
            token=settings.receipt_service_token or None,
        )
    return LocalReceiptClient(receipts)


def build_context(settings: Settings, *, rng: Optional[RandomSource] = None) -> AppContext:
    database = CrmDatabase(settings.database_url)
    metrics = MetricsRegistry()
    receipts = ReceiptService(database)
    worker = DeliveryWorker(
        database=database,
        receipt_client=build_receipt_client(settings, receipts),
        batch_size=settings.worker_batch_size,
        success_rate=settings.worker_success_rate,
        claim_lease_seconds=settings.claim_lease_seconds,
        rng=rng,
        metrics=metrics,
    )
    return AppContext(
        settings=settings,
        database=database,
        store=CrmStore(database),
        receipts=receipts,
        worker=worker,
        scheduler=DeliveryScheduler(worker, interval_seconds=settings.worker_interval_seconds),
        metrics=metrics,
    )
