"""Database models for the relational backend."""
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from ..database import Base


class TesterRow(Base):
    """Tester; its IDs live in ``id_mappings``."""

    __tablename__ = "testers"

    uuid = Column(String(36), primary_key=True)
    name = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IdMappingRow(Base):
    """External OAuth id owned by a tester. The primary key makes ids global."""

    __tablename__ = "id_mappings"

    id = Column(String(255), primary_key=True)
    tester_uuid = Column(
        String(36), ForeignKey("testers.uuid", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PurchaseRow(Base):
    """Purchase aggregate root."""

    __tablename__ = "purchases"

    id = Column(String(36), primary_key=True)
    tester_uuid = Column(
        String(36), ForeignKey("testers.uuid", ondelete="CASCADE"), nullable=False, index=True
    )
    date = Column(Date, nullable=False, index=True)
    order = Column("order_number", String(255), nullable=False, index=True)
    description = Column(Text, nullable=False)
    amount = Column(Float, nullable=False)
    screenshot = Column(Text, nullable=False)  # Base64 encoded image
    screenshot_summary = Column(Text, nullable=True)
    refunded = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_purchases_tester_refunded", "tester_uuid", "refunded"),
        Index("idx_purchases_tester_date", "tester_uuid", "date"),
        Index("idx_purchases_tester_order", "tester_uuid", "order_number"),
    )


class FeedbackRow(Base):
    """Feedback, at most one per purchase."""

    __tablename__ = "feedbacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    purchase = Column(
        "purchase_id",
        String(36),
        ForeignKey("purchases.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    date = Column(Date, nullable=False)
    feedback = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PublicationRow(Base):
    """Publication proof, at most one per purchase."""

    __tablename__ = "publications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    purchase = Column(
        "purchase_id",
        String(36),
        ForeignKey("purchases.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    date = Column(Date, nullable=False)
    screenshot = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RefundRow(Base):
    """Refund, at most one per purchase."""

    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    purchase = Column(
        "purchase_id",
        String(36),
        ForeignKey("purchases.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    date = Column(Date, nullable=False)
    refund_date = Column(Date, nullable=False)
    amount = Column(Float, nullable=False)
    transaction_id = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class LinkRow(Base):
    """Short public link. Timestamps are naive UTC."""

    __tablename__ = "links"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(7), nullable=False, unique=True, index=True)
    purchase = Column(
        "purchase_id",
        String(36),
        ForeignKey("purchases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_links_code_expires_at", "code", "expires_at"),
    )


class SchemaVersionRow(Base):
    """Single-row schema version record."""

    __tablename__ = "schema_version"

    id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_schema_version_single_row"),
    )
