from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, ForeignKey, Enum, Index, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from . import Base


# JSONB on Postgres, generic JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER primary keys.
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


class NaviType(str, enum.Enum):
    PHONE_AGREEMENT = "PHONE_AGREEMENT"
    ONLINE_INQUIRY = "ONLINE_INQUIRY"


class NaviStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DealingStatus(str, enum.Enum):
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    CONFIRM_REQUIRED = "CONFIRM_REQUIRED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class ListingStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    SOLD = "SOLD"


class LedgerEntryCategory(str, enum.Enum):
    PURCHASE = "PURCHASE"
    SALE = "SALE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


class LedgerEntryKind(str, enum.Enum):
    PLANNED = "PLANNED"
    ACTUAL = "ACTUAL"


class LedgerEntrySource(str, enum.Enum):
    TRADE_STATUS_TRANSITION = "TRADE_STATUS_TRANSITION"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    company_name = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Listing(Base):
    """Marketplace listing (exhibit). Owned by the listing service; the trade
    core only snapshots it and flips it to SOLD."""
    __tablename__ = "listings"

    id = Column(String(36), primary_key=True)
    seller_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Enum(ListingStatus), nullable=False, default=ListingStatus.PUBLISHED)

    title = Column(Text, nullable=True)
    maker = Column(Text, nullable=True)
    machine_name = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    unit_price_excl_tax = Column(Integer, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Navi(Base):
    """Negotiation proposed by the owner (seller) to a buyer."""
    __tablename__ = "navis"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    # Legacy rows leave this NULL and carry payload["buyerId"] instead.
    buyer_user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)

    navi_type = Column(Enum(NaviType), nullable=False, default=NaviType.PHONE_AGREEMENT)
    status = Column(Enum(NaviStatus), nullable=False, default=NaviStatus.DRAFT)

    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=True)
    listing_snapshot = Column(JSONType, nullable=True)
    payload = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User", foreign_keys=[owner_user_id])
    buyer = relationship("User", foreign_keys=[buyer_user_id])
    dealing = relationship("Dealing", back_populates="navi", uselist=False)

    __table_args__ = (
        Index("idx_navis_owner_status", "owner_user_id", "status"),
        Index("idx_navis_buyer_status", "buyer_user_id", "status"),
    )


class Dealing(Base):
    """Binding trade created exactly once when a Navi is approved."""
    __tablename__ = "dealings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    buyer_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    status = Column(Enum(DealingStatus), nullable=False, default=DealingStatus.APPROVAL_REQUIRED)
    payload = Column(JSONType, nullable=True)

    navi_id = Column(Integer, ForeignKey("navis.id"), nullable=False, unique=True)

    # Write-once; see app.services.status_graph.build_status_update.
    payment_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    navi = relationship("Navi", back_populates="dealing")
    seller = relationship("User", foreign_keys=[seller_user_id])
    buyer = relationship("User", foreign_keys=[buyer_user_id])
    ledger_entries = relationship("LedgerEntry", back_populates="dealing")

    __table_args__ = (
        Index("idx_dealings_seller_status", "seller_user_id", "status"),
        Index("idx_dealings_buyer_status", "buyer_user_id", "status"),
    )


class LedgerEntry(Base):
    """Append-only accounting row. Never updated or deleted."""
    __tablename__ = "ledger_entries"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    trade_id = Column(Integer, ForeignKey("dealings.id"), nullable=True, index=True)

    category = Column(Enum(LedgerEntryCategory), nullable=False)
    kind = Column(Enum(LedgerEntryKind), nullable=False, default=LedgerEntryKind.PLANNED)
    amount_yen = Column(BigInteger, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, index=True)

    counterparty_name = Column(Text, nullable=True)
    maker_name = Column(Text, nullable=True)
    item_name = Column(Text, nullable=True)
    memo = Column(Text, nullable=True)
    balance_after_yen = Column(BigInteger, nullable=True)
    breakdown = Column(JSONType, nullable=True)

    created_by_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    source = Column(Enum(LedgerEntrySource), nullable=False, default=LedgerEntrySource.TRADE_STATUS_TRANSITION)
    trade_status_at_creation = Column(Enum(DealingStatus), nullable=True)
    dedupe_key = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    dealing = relationship("Dealing", back_populates="ledger_entries")

    __table_args__ = (
        UniqueConstraint("user_id", "trade_id", "category", "kind", name="uq_ledger_entry_user_trade_category_kind"),
        Index("idx_ledger_entries_user_occurred", "user_id", "occurred_at"),
    )
