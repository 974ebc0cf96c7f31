from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class DeliveryStatus(str, Enum):
    pending = "PENDING"
    claimed = "CLAIMED"
    sent = "SENT"
    failed = "FAILED"


class ReceiptStatus(str, Enum):
    sent = "SENT"
    failed = "FAILED"


class ReceiptResult(str, Enum):
    updated = "updated"
    unchanged = "unchanged"


class CustomerCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=30)
    total_spent: float = Field(default=0, ge=0)
    visit_count: int = Field(default=0, ge=0)
    last_active: Optional[datetime] = None


class OrderCreateRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    amount: float = Field(gt=0)
    order_date: Optional[datetime] = None


class SegmentCreateRequest(BaseModel):
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("user_id", "userId"))
    name: str = Field(min_length=1, max_length=120)
    rules: dict[str, Any]


class SegmentPreviewRequest(BaseModel):
    rules: dict[str, Any] = Field(validation_alias=AliasChoices("rules", "segmentRules"))


class CampaignCreateRequest(BaseModel):
    segment_id: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=2000)


class ReceiptItem(BaseModel):
    campaign_id: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    status: ReceiptStatus


MAX_RECEIPT_BATCH = 1000


class ReceiptBatchRequest(BaseModel):
    receipts: list[ReceiptItem] = Field(min_length=1, max_length=MAX_RECEIPT_BATCH)


class DashboardRequest(BaseModel):
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("user_id", "userId"))


class CustomerRecord(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str]
    total_spent: float
    visit_count: int
    last_active: Optional[datetime]
    created_at: datetime


class OrderRecord(BaseModel):
    id: str
    customer_id: str
    amount: float
    order_date: datetime


class SegmentRecord(BaseModel):
    id: str
    user_id: str
    name: str
    rules: dict[str, Any]
    audience_size: int
    created_at: datetime


class CampaignRecord(BaseModel):
    id: str
    segment_id: str
    message: str
    created_at: datetime


class DeliveryLogRecord(BaseModel):
    id: str
    campaign_id: str
    customer_id: str
    status: DeliveryStatus
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class CustomerResponse(BaseModel):
    customer: CustomerRecord


class CustomerDetailsItem(CustomerRecord):
    orders: list[OrderRecord]


class OrderResponse(BaseModel):
    order: OrderRecord


class AudienceMember(BaseModel):
    id: str
    name: str
    email: str
    total_spent: float


class SegmentCreateResponse(BaseModel):
    segment: SegmentRecord
    customers: list[AudienceMember]
    audience_size: int


class SegmentPreviewResponse(BaseModel):
    audience_size: int
    customers: list[AudienceMember]


class CampaignCreateResponse(BaseModel):
    campaign: CampaignRecord
    customers_targeted: int


class CampaignHistoryItem(BaseModel):
    campaign_id: str
    segment_id: str
    message: str
    created_at: datetime
    audience_size: int
    sent_count: int
    failed_count: int
    pending_count: int


class CampaignHistoryResponse(BaseModel):
    campaigns: list[CampaignHistoryItem]


class ReceiptResponse(BaseModel):
    message: str
    result: ReceiptResult


class ReceiptBatchResponse(BaseModel):
    message: str
    updated: int
    unchanged: int


class DashboardCampaign(BaseModel):
    id: str
    message: str
    segment: str
    created_at: datetime
    audience_size: int
    success: int
    failed: int


class DashboardResponse(BaseModel):
    total_customers: int
    total_orders: int
    total_segments: int
    total_campaigns: int
    recent_campaigns: list[DashboardCampaign]
