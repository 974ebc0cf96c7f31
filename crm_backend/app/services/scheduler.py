from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crm_backend.app.services.worker import DeliveryWorker

logger = logging.getLogger("crm.worker")

JOB_ID = "delivery_worker"


class DeliveryScheduler:
    """Runs ``DeliveryWorker.run_once`` on a fixed interval, one tick at a time."""

    def __init__(self, worker: DeliveryWorker, *, interval_seconds: int) -> None:
        self.worker = worker
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def start(self) -> None:
        if self.running:
            return
        self.scheduler.add_job(
            self.worker.run_once,
            IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Delivery worker tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("delivery_scheduler_started interval_seconds=%s", self.interval_seconds)

    def stop(self) -> None:
        if self.running:
            self.scheduler.shutdown(wait=True)
            logger.info("delivery_scheduler_stopped")
