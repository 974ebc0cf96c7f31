from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("crm")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    delivery_ticks: int
    delivery_ticks_failed: int
    receipts_sent: int
    receipts_failed: int


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._delivery_ticks = 0
        self._delivery_ticks_failed = 0
        self._receipts_sent = 0
        self._receipts_failed = 0

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_tick(self, *, ok: bool, sent: int = 0, failed: int = 0) -> None:
        with self._lock:
            self._delivery_ticks += 1
            if not ok:
                self._delivery_ticks_failed += 1
                return
            self._receipts_sent += sent
            self._receipts_failed += failed

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                delivery_ticks=self._delivery_ticks,
                delivery_ticks_failed=self._delivery_ticks_failed,
                receipts_sent=self._receipts_sent,
                receipts_failed=self._receipts_failed,
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP crm_requests_total Total HTTP requests",
            "# TYPE crm_requests_total counter",
            f"crm_requests_total {snap.requests_total}",
            "# HELP crm_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE crm_requests_5xx_total counter",
            f"crm_requests_5xx_total {snap.requests_5xx}",
            "# HELP crm_request_avg_latency_ms Average request latency ms",
            "# TYPE crm_request_avg_latency_ms gauge",
            f"crm_request_avg_latency_ms {avg_latency:.2f}",
            "# HELP crm_delivery_ticks_total Delivery worker ticks that claimed rows",
            "# TYPE crm_delivery_ticks_total counter",
            f"crm_delivery_ticks_total {snap.delivery_ticks}",
            "# HELP crm_delivery_ticks_failed_total Delivery worker ticks released for retry",
            "# TYPE crm_delivery_ticks_failed_total counter",
            f"crm_delivery_ticks_failed_total {snap.delivery_ticks_failed}",
            "# HELP crm_delivery_receipts_total Receipts committed by the delivery worker",
            "# TYPE crm_delivery_receipts_total counter",
            f'crm_delivery_receipts_total{{status="SENT"}} {snap.receipts_sent}',
            f'crm_delivery_receipts_total{{status="FAILED"}} {snap.receipts_failed}',
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    f'crm_route_requests_total{{route="{route}",status="{status_code}"}} {count}'
                )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
