from __future__ import annotations

from sqlalchemy import (
    Column,
    Index,
    String,
    TIMESTAMP,
    JSON,
    Integer,
    UniqueConstraint,
    text as sqltext,
)
from .base import Base


# -------------------------
# Usage Events (metered, immutable once stored)
# -------------------------
class UsageEventRecord(Base):
    __tablename__ = "usage_events"

    # autoincrement id doubles as the ingestion order (timestamp tie-break)
    id = Column(Integer, primary_key=True, autoincrement=True)

    organization_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, nullable=False, index=True)
    code = Column(String, nullable=False, index=True)

    transaction_id = Column(String, nullable=False)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)

    properties = Column(JSON, nullable=False, default=dict)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=sqltext("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "subscription_id", "transaction_id", name="uq_usage_events_transaction"
        ),
        Index("ix_usage_events_window", "organization_id", "subscription_id", "code", "timestamp"),
    )
