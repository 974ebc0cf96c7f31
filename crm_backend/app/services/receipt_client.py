from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence
from urllib import request
from urllib.error import HTTPError, URLError

from crm_backend.app.errors import StoreError, StoreUnavailableError
from crm_backend.app.models import DeliveryStatus
from crm_backend.app.services.receipts import ReceiptService


class ReceiptServiceError(Exception):
    pass


class ReceiptRejectedError(Exception):
    pass


@dataclass(frozen=True)
class Receipt:
    campaign_id: str
    customer_id: str
    status: DeliveryStatus

    def to_payload(self) -> dict[str, str]:
        return {
            "campaign_id": self.campaign_id,
            "customer_id": self.customer_id,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class ReceiptSubmission:
    updated: int
    unchanged: int


class ReceiptClient(Protocol):
    def submit_batch(self, receipts: Sequence[Receipt]) -> ReceiptSubmission: ...


class LocalReceiptClient:
    def __init__(self, receipts: ReceiptService) -> None:
        self.receipts = receipts

    def submit_batch(self, receipts: Sequence[Receipt]) -> ReceiptSubmission:
        try:
            result = self.receipts.update_batch([receipt.to_payload() for receipt in receipts])
        except StoreUnavailableError as exc:
            raise ReceiptServiceError(str(exc)) from exc
        except StoreError as exc:
            raise ReceiptRejectedError(str(exc)) from exc
        return ReceiptSubmission(updated=result.updated, unchanged=result.unchanged)


class HttpReceiptClient:
    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float,
        token: Optional[str] = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.token = token

    def submit_batch(self, receipts: Sequence[Receipt]) -> ReceiptSubmission:
        body = json.dumps(
            {"receipts": [receipt.to_payload() for receipt in receipts]},
            separators=(",", ":"),
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = request.Request(self.url, data=body, method="POST", headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            if 400 <= exc.code < 500:
                raise ReceiptRejectedError(
                    f"receipt batch rejected with status {exc.code}"
                ) from exc
            raise ReceiptServiceError(f"receipt service returned status {exc.code}") from exc
        except (URLError, TimeoutError) as exc:
            raise ReceiptServiceError("receipt batch request failed") from exc

        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ReceiptServiceError("receipt service response was not valid json") from exc
        if not isinstance(decoded, dict):
            raise ReceiptServiceError("receipt service response was not a json object")
        try:
            return ReceiptSubmission(
                updated=int(decoded.get("updated", 0) or 0),
                unchanged=int(decoded.get("unchanged", 0) or 0),
            )
        except (TypeError, ValueError) as exc:
            raise ReceiptServiceError("receipt service response had invalid counts") from exc
