from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from sqlalchemy import case, func, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, IntegrityError

from crm_backend.app.errors import (
    StoreConflictError,
    StoreNotFoundError,
    StoreUnavailableError,
    StoreValidationError,
)
from crm_backend.app.models import (
    AudienceMember,
    CampaignHistoryItem,
    CampaignRecord,
    CustomerCreateRequest,
    CustomerDetailsItem,
    CustomerRecord,
    DashboardCampaign,
    DashboardResponse,
    DeliveryStatus,
    OrderCreateRequest,
    OrderRecord,
    SegmentRecord,
    new_id,
    to_naive_utc,
    utc_now,
)
from crm_backend.app.persistence import CrmDatabase
from crm_backend.app.services import delivery_log
from crm_backend.app.services.rules import RuleNode, build_filter, parse_rule_tree

logger = logging.getLogger("crm.store")

RECENT_CAMPAIGNS_LIMIT = 5


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@contextmanager
def storage_guard(operation: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError:
        raise
    except DBAPIError as exc:
        logger.warning("storage_error operation=%s error=%s", operation, exc)
        raise StoreUnavailableError("storage unavailable") from exc


class CrmStore:
    def __init__(self, database: CrmDatabase) -> None:
        self.database = database

    def create_customer(self, request: CustomerCreateRequest) -> CustomerRecord:
        name = _text(request.name)
        email = _text(request.email)
        if not name or not email:
            raise StoreValidationError("name and email are required")
        customer = CustomerRecord(
            id=new_id("cus"),
            name=name,
            email=email.lower(),
            phone=_text(request.phone),
            total_spent=request.total_spent,
            visit_count=request.visit_count,
            last_active=to_naive_utc(request.last_active),
            created_at=utc_now(),
        )
        try:
            with storage_guard("create_customer"), self.database.engine.begin() as conn:
                conn.execute(self.database.customers.insert().values(**customer.model_dump()))
        except IntegrityError as exc:
            raise StoreConflictError(f"email already exists: {customer.email}") from exc
        return customer

    def customer_details(self) -> list[CustomerDetailsItem]:
        customers = self.database.customers
        orders = self.database.orders
        query = (
            select(
                customers,
                orders.c.id.label("order_id"),
                orders.c.amount.label("order_amount"),
                orders.c.order_date.label("order_date"),
            )
            .select_from(customers.outerjoin(orders, orders.c.customer_id == customers.c.id))
            .order_by(customers.c.created_at, customers.c.id, orders.c.order_date.desc())
        )
        with storage_guard("customer_details"), self.database.engine.connect() as conn:
            rows = conn.execute(query).all()

        grouped: dict[str, CustomerDetailsItem] = {}
        for row in rows:
            item = grouped.get(row.id)
            if item is None:
                item = CustomerDetailsItem(
                    id=row.id,
                    name=row.name,
                    email=row.email,
                    phone=row.phone,
                    total_spent=row.total_spent,
                    visit_count=row.visit_count,
                    last_active=row.last_active,
                    created_at=row.created_at,
                    orders=[],
                )
                grouped[row.id] = item
            if row.order_id:
                item.orders.append(
                    OrderRecord(
                        id=row.order_id,
                        customer_id=row.id,
                        amount=row.order_amount,
                        order_date=row.order_date,
                    )
                )
        return list(grouped.values())

    def create_order(self, request: OrderCreateRequest) -> OrderRecord:
        customer_id = _text(request.customer_id)
        if not customer_id:
            raise StoreValidationError("customer_id and amount are required")
        customers = self.database.customers
        order = OrderRecord(
            id=new_id("ord"),
            customer_id=customer_id,
            amount=request.amount,
            order_date=to_naive_utc(request.order_date) or utc_now(),
        )
        with storage_guard("create_order"), self.database.engine.begin() as conn:
            exists = conn.execute(
                select(customers.c.id).where(customers.c.id == customer_id)
            ).first()
            if not exists:
                raise StoreNotFoundError(f"customer not found: {customer_id}")
            conn.execute(self.database.orders.insert().values(**order.model_dump()))
        return order

    def _resolve_audience(
        self, conn: Connection, tree: RuleNode, *, now: datetime
    ) -> list[AudienceMember]:
        customers = self.database.customers
        condition = build_filter(
            tree,
            customers=customers,
            orders=self.database.orders,
            now=now,
        )
        rows = conn.execute(
            select(customers.c.id, customers.c.name, customers.c.email, customers.c.total_spent)
            .where(condition)
            .order_by(customers.c.created_at, customers.c.id)
        ).all()
        return [
            AudienceMember(id=row.id, name=row.name, email=row.email, total_spent=row.total_spent)
            for row in rows
        ]

    def preview_segment(self, rules: Any) -> list[AudienceMember]:
        if not isinstance(rules, dict):
            raise StoreValidationError("rules must be a valid JSON object")
        tree = parse_rule_tree(rules)
        with storage_guard("preview_segment"), self.database.engine.connect() as conn:
            return self._resolve_audience(conn, tree, now=utc_now())

    def create_segment(
        self, *, user_id: Any, name: Any, rules: Any
    ) -> tuple[SegmentRecord, list[AudienceMember]]:
        owner = _text(user_id)
        segment_name = _text(name)
        if not owner or not segment_name or rules is None:
            raise StoreValidationError("user_id, name, and rules are required")
        if not isinstance(rules, dict):
            raise StoreValidationError("rules must be a valid JSON object")
        tree = parse_rule_tree(rules)

        now = utc_now()
        with storage_guard("create_segment"), self.database.engine.begin() as conn:
            members = self._resolve_audience(conn, tree, now=now)
            segment = SegmentRecord(
                id=new_id("seg"),
                user_id=owner,
                name=segment_name,
                rules=rules,
                audience_size=len(members),
                created_at=now,
            )
            conn.execute(
                self.database.segments.insert().values(
                    id=segment.id,
                    user_id=segment.user_id,
                    name=segment.name,
                    rules_json=json.dumps(rules),
                    audience_size=segment.audience_size,
                    created_at=segment.created_at,
                )
            )
        logger.info(
            "segment_created segment_id=%s user_id=%s audience_size=%s",
            segment.id,
            segment.user_id,
            segment.audience_size,
        )
        return segment, members

    def _segment_from_row(self, row) -> SegmentRecord:
        return SegmentRecord(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            rules=json.loads(row.rules_json),
            audience_size=row.audience_size,
            created_at=row.created_at,
        )

    def get_segment(self, segment_id: str) -> SegmentRecord:
        segments = self.database.segments
        with storage_guard("get_segment"), self.database.engine.connect() as conn:
            row = conn.execute(select(segments).where(segments.c.id == segment_id)).first()
        if not row:
            raise StoreNotFoundError(f"segment not found: {segment_id}")
        return self._segment_from_row(row)

    def create_campaign(self, *, segment_id: Any, message: Any) -> tuple[CampaignRecord, int]:
        """
        Creates the campaign and one PENDING delivery row per current segment
        member in a single transaction. Membership is re-derived from the
        stored rule tree, not from the cached audience size.
        """
        segment_key = _text(segment_id)
        body = _text(message)
        if not segment_key or not body:
            raise StoreValidationError("segment_id and message are required")

        segments = self.database.segments
        now = utc_now()
        with storage_guard("create_campaign"), self.database.engine.begin() as conn:
            row = conn.execute(select(segments).where(segments.c.id == segment_key)).first()
            if not row:
                raise StoreNotFoundError(f"segment not found: {segment_key}")
            segment = self._segment_from_row(row)
            members = self._resolve_audience(conn, parse_rule_tree(segment.rules), now=now)
            campaign = CampaignRecord(
                id=new_id("cmp"),
                segment_id=segment.id,
                message=body,
                created_at=now,
            )
            conn.execute(self.database.campaigns.insert().values(**campaign.model_dump()))
            targeted = delivery_log.insert_pending(
                conn,
                self.database,
                campaign_id=campaign.id,
                customer_ids=[member.id for member in members],
                now=now,
            )
        logger.info(
            "campaign_created campaign_id=%s segment_id=%s customers_targeted=%s",
            campaign.id,
            campaign.segment_id,
            targeted,
        )
        return campaign, targeted

    def campaign_history(self) -> list[CampaignHistoryItem]:
        campaigns = self.database.campaigns
        log = self.database.communication_log
        query = (
            select(
                campaigns.c.id,
                campaigns.c.segment_id,
                campaigns.c.message,
                campaigns.c.created_at,
                func.count(log.c.id).label("audience_size"),
                func.count(case((log.c.status == DeliveryStatus.sent.value, 1))).label(
                    "sent_count"
                ),
                func.count(case((log.c.status == DeliveryStatus.failed.value, 1))).label(
                    "failed_count"
                ),
                func.count(
                    case(
                        (
                            log.c.status.in_(
                                [DeliveryStatus.pending.value, DeliveryStatus.claimed.value]
                            ),
                            1,
                        )
                    )
                ).label("pending_count"),
            )
            .select_from(campaigns.outerjoin(log, log.c.campaign_id == campaigns.c.id))
            .group_by(
                campaigns.c.id,
                campaigns.c.segment_id,
                campaigns.c.message,
                campaigns.c.created_at,
            )
            .order_by(campaigns.c.created_at.desc(), campaigns.c.id.desc())
        )
        with storage_guard("campaign_history"), self.database.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [
            CampaignHistoryItem(
                campaign_id=row.id,
                segment_id=row.segment_id,
                message=row.message,
                created_at=row.created_at,
                audience_size=row.audience_size,
                sent_count=row.sent_count,
                failed_count=row.failed_count,
                pending_count=row.pending_count,
            )
            for row in rows
        ]

    def dashboard(self, user_id: Any) -> DashboardResponse:
        owner = _text(user_id)
        if not owner:
            raise StoreValidationError("user_id is required")
        db = self.database
        campaigns = db.campaigns
        segments = db.segments
        log = db.communication_log
        owned_campaigns = (
            select(
                campaigns.c.id,
                campaigns.c.message,
                campaigns.c.created_at,
                segments.c.name.label("segment_name"),
                segments.c.audience_size,
            )
            .select_from(campaigns.join(segments, segments.c.id == campaigns.c.segment_id))
            .where(segments.c.user_id == owner)
        )
        with storage_guard("dashboard"), db.engine.connect() as conn:
            total_customers = conn.execute(
                select(func.count()).select_from(db.customers)
            ).scalar_one()
            total_orders = conn.execute(select(func.count()).select_from(db.orders)).scalar_one()
            total_segments = conn.execute(
                select(func.count()).select_from(segments).where(segments.c.user_id == owner)
            ).scalar_one()
            total_campaigns = conn.execute(
                select(func.count()).select_from(owned_campaigns.subquery())
            ).scalar_one()
            recent = conn.execute(
                owned_campaigns.order_by(campaigns.c.created_at.desc(), campaigns.c.id.desc())
                .limit(RECENT_CAMPAIGNS_LIMIT)
            ).all()

            performance: dict[str, dict[str, int]] = {
                row.id: {"success": 0, "failed": 0} for row in recent
            }
            if performance:
                status_rows = conn.execute(
                    select(log.c.campaign_id, log.c.status, func.count(log.c.id))
                    .where(log.c.campaign_id.in_(list(performance)))
                    .group_by(log.c.campaign_id, log.c.status)
                ).all()
                for campaign_id, status_value, count in status_rows:
                    if status_value == DeliveryStatus.sent.value:
                        performance[campaign_id]["success"] = int(count)
                    elif status_value == DeliveryStatus.failed.value:
                        performance[campaign_id]["failed"] = int(count)

        return DashboardResponse(
            total_customers=total_customers,
            total_orders=total_orders,
            total_segments=total_segments,
            total_campaigns=total_campaigns,
            recent_campaigns=[
                DashboardCampaign(
                    id=row.id,
                    message=row.message,
                    segment=row.segment_name,
                    created_at=row.created_at,
                    audience_size=row.audience_size,
                    success=performance[row.id]["success"],
                    failed=performance[row.id]["failed"],
                )
                for row in recent
            ],
        )
