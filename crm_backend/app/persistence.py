from __future__ import annotations

from pathlib import Path

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class CrmDatabase:
    """
    Owns the engine and the table definitions. Works with SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.customers = Table(
            "customers",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("name", String(120), nullable=False),
            Column("email", String(255), nullable=False, unique=True),
            Column("phone", String(30), nullable=True),
            Column("total_spent", Float, nullable=False, default=0),
            Column("visit_count", Integer, nullable=False, default=0),
            Column("last_active", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
        )
        self.orders = Table(
            "orders",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("customer_id", String(40), ForeignKey("customers.id"), nullable=False),
            Column("amount", Float, nullable=False),
            Column("order_date", DateTime, nullable=False),
            Index("ix_orders_customer_id", "customer_id"),
        )
        self.segments = Table(
            "segments",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("user_id", String(120), nullable=False),
            Column("name", String(120), nullable=False),
            Column("rules_json", Text, nullable=False),
            Column("audience_size", Integer, nullable=False),
            Column("created_at", DateTime, nullable=False),
            Index("ix_segments_user_id", "user_id"),
        )
        self.campaigns = Table(
            "campaigns",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("segment_id", String(40), ForeignKey("segments.id"), nullable=False),
            Column("message", Text, nullable=False),
            Column("created_at", DateTime, nullable=False),
        )
        self.communication_log = Table(
            "communication_log",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("campaign_id", String(40), ForeignKey("campaigns.id"), nullable=False),
            Column("customer_id", String(40), ForeignKey("customers.id"), nullable=False),
            Column("status", String(20), nullable=False),
            Column("claim_token", String(64), nullable=True),
            Column("claimed_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            UniqueConstraint("campaign_id", "customer_id", name="uq_communication_log_pair"),
            Index("ix_communication_log_status_created", "status", "created_at"),
            Index("ix_communication_log_claim_token", "claim_token"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
