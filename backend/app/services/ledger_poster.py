"""Append-only ledger postings for trades.

Every posting is keyed by (user_id, trade_id, category, kind) and written at
most once. Callers pass the Session that also carries the status change, so
the existence check, the insert and the status write commit together.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import (
    Dealing,
    DealingStatus,
    LedgerEntry,
    LedgerEntryCategory,
    LedgerEntryKind,
    LedgerEntrySource,
)
from app.services.collaborators import UserDirectory, default_user_directory
from app.services.statement_totals import items_from_payload, resolve_amount_yen, statement_breakdown
from app.services.status_graph import DealingActor, status_at_least
from app.services.todo_projector import LedgerTiming, TodoRole, ledger_timing
from app.utils.logger import logger


@dataclass
class LedgerMetadata:
    occurred_at: Optional[datetime] = None
    counterparty_name: Optional[str] = None
    maker_name: Optional[str] = None
    item_name: Optional[str] = None
    memo: Optional[str] = None
    balance_after_yen: Optional[int] = None
    breakdown: Optional[Dict[str, Any]] = None
    created_by_user_id: Optional[str] = None
    source: LedgerEntrySource = LedgerEntrySource.TRADE_STATUS_TRANSITION
    trade_status_at_creation: Optional[DealingStatus] = None


@dataclass(frozen=True)
class LedgerSnapshot:
    amount_yen: int
    trade_id: int
    maker_name: Optional[str]
    item_name: Optional[str]
    buyer_counterparty: Optional[str]
    seller_counterparty: Optional[str]
    breakdown: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerWarning:
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class BalanceSummary:
    actual_balance_yen: int
    planned_balance_yen: int
    pending_in_yen: int
    pending_out_yen: int


_INFLOW_CATEGORIES = frozenset({LedgerEntryCategory.SALE, LedgerEntryCategory.DEPOSIT})


def _default_tax_rate() -> Decimal:
    return Decimal(str(settings.DEFAULT_TAX_RATE))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_dedupe_key(
    user_id: str,
    trade_id: Optional[int],
    category: LedgerEntryCategory,
    kind: LedgerEntryKind,
    source: LedgerEntrySource,
    occurred_at: datetime,
) -> str:
    if trade_id:
        return f"{trade_id}:{category.value}:{kind.value}:{source.value}"
    return f"manual:{user_id}:{category.value}:{kind.value}:{occurred_at.isoformat()}"


def find_entry(
    db: Session,
    user_id: str,
    trade_id: Optional[int],
    category: LedgerEntryCategory,
    kind: LedgerEntryKind,
) -> Optional[LedgerEntry]:
    query = db.query(LedgerEntry).filter(
        LedgerEntry.user_id == user_id,
        LedgerEntry.category == category,
        LedgerEntry.kind == kind,
    )
    if trade_id is None:
        query = query.filter(LedgerEntry.trade_id.is_(None))
    else:
        query = query.filter(LedgerEntry.trade_id == trade_id)
    return query.order_by(LedgerEntry.id.asc()).first()


def ensure_entry(
    db: Session,
    user_id: str,
    category: LedgerEntryCategory,
    kind: LedgerEntryKind,
    amount_yen: int,
    trade_id: Optional[int],
    metadata: Optional[LedgerMetadata] = None,
) -> Tuple[LedgerEntry, bool]:
    """Return ``(entry, created)`` for the (user, trade, category, kind) key.

    An existing row is returned untouched. A concurrent insert that wins the
    race surfaces as an IntegrityError inside the SAVEPOINT and is resolved to
    the winner's row, so the outer transaction stays usable.
    """
    if not user_id:
        raise ValueError("user_id is required for a ledger entry")
    amount = int(amount_yen)
    if amount <= 0:
        raise ValueError(f"amount_yen must be positive, got {amount_yen!r}")

    meta = metadata or LedgerMetadata()

    existing = find_entry(db, user_id, trade_id, category, kind)
    if existing:
        if existing.amount_yen != amount:
            logger.warning(
                "Ledger amount drift for trade=%s user=%s %s/%s: stored=%s recomputed=%s",
                trade_id, user_id, category.value, kind.value, existing.amount_yen, amount,
            )
        return existing, False

    occurred_at = meta.occurred_at or _utcnow()
    entry = LedgerEntry(
        user_id=user_id,
        trade_id=trade_id,
        category=category,
        kind=kind,
        amount_yen=amount,
        occurred_at=occurred_at,
        counterparty_name=meta.counterparty_name,
        maker_name=meta.maker_name,
        item_name=meta.item_name,
        memo=meta.memo,
        balance_after_yen=meta.balance_after_yen,
        breakdown=meta.breakdown,
        created_by_user_id=meta.created_by_user_id or user_id,
        source=meta.source,
        trade_status_at_creation=meta.trade_status_at_creation,
        dedupe_key=make_dedupe_key(user_id, trade_id, category, kind, meta.source, occurred_at),
    )

    try:
        with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        winner = find_entry(db, user_id, trade_id, category, kind)
        if winner is None:
            raise
        logger.info(
            "Ledger entry for trade=%s user=%s %s/%s already written concurrently (id=%s)",
            trade_id, user_id, category.value, kind.value, winner.id,
        )
        return winner, False

    logger.info(
        "Ledger entry %s posted: trade=%s user=%s %s/%s amount=%s",
        entry.id, trade_id, user_id, category.value, kind.value, amount,
    )
    return entry, True


def build_ledger_snapshot(
    db: Session,
    dealing: Dealing,
    user_directory: UserDirectory = default_user_directory,
) -> LedgerSnapshot:
    payload = dealing.payload
    if not isinstance(payload, dict) or not payload:
        payload = dealing.navi.payload if dealing.navi is not None and isinstance(dealing.navi.payload, dict) else {}

    tax_rate = _default_tax_rate()
    items = items_from_payload(payload)
    primary = items[0] if items else None

    seller_name = payload.get("sellerCompanyName") or user_directory.company_name(db, dealing.seller_user_id)
    buyer_name = payload.get("buyerCompanyName") or user_directory.company_name(db, dealing.buyer_user_id)

    return LedgerSnapshot(
        amount_yen=resolve_amount_yen(payload, tax_rate),
        trade_id=dealing.id,
        maker_name=primary.maker if primary else None,
        item_name=primary.item_name if primary else None,
        # Each party's entry names the other party.
        buyer_counterparty=seller_name,
        seller_counterparty=buyer_name,
        breakdown=statement_breakdown(payload, tax_rate),
    )


def _post(
    db: Session,
    dealing: Dealing,
    snapshot: LedgerSnapshot,
    role: DealingActor,
    kind: LedgerEntryKind,
    actor_user_id: Optional[str],
    occurred_at: Optional[datetime],
) -> Optional[LedgerEntry]:
    if role == DealingActor.BUYER:
        user_id, category, counterparty = dealing.buyer_user_id, LedgerEntryCategory.PURCHASE, snapshot.buyer_counterparty
    elif role == DealingActor.SELLER:
        user_id, category, counterparty = dealing.seller_user_id, LedgerEntryCategory.SALE, snapshot.seller_counterparty
    else:
        raise ValueError("Ledger postings are booked against the buyer or the seller")

    if not user_id:
        return None
    if snapshot.amount_yen <= 0:
        logger.warning("Trade %s has no positive amount; skipping %s %s posting", dealing.id, kind.value, category.value)
        return None

    entry, created = ensure_entry(
        db,
        user_id=user_id,
        category=category,
        kind=kind,
        amount_yen=snapshot.amount_yen,
        trade_id=snapshot.trade_id,
        metadata=LedgerMetadata(
            occurred_at=occurred_at,
            counterparty_name=counterparty,
            maker_name=snapshot.maker_name,
            item_name=snapshot.item_name,
            breakdown=snapshot.breakdown,
            created_by_user_id=actor_user_id or user_id,
            trade_status_at_creation=dealing.status,
        ),
    )
    return entry if created else None


def post_planned(
    db: Session,
    dealing: Dealing,
    actor_user_id: Optional[str] = None,
    user_directory: UserDirectory = default_user_directory,
    occurred_at: Optional[datetime] = None,
) -> List[LedgerEntry]:
    """Forecast postings for both parties: buyer PURCHASE and seller SALE, same amount."""
    if not dealing.buyer_user_id or not dealing.seller_user_id:
        return []
    snapshot = build_ledger_snapshot(db, dealing, user_directory)
    created = []
    for role in (DealingActor.BUYER, DealingActor.SELLER):
        entry = _post(db, dealing, snapshot, role, LedgerEntryKind.PLANNED, actor_user_id, occurred_at)
        if entry is not None:
            created.append(entry)
    return created


def post_actual(
    db: Session,
    dealing: Dealing,
    role: DealingActor,
    actor_user_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    user_directory: UserDirectory = default_user_directory,
) -> Optional[LedgerEntry]:
    """Settlement posting for one party (buyer PURCHASE or seller SALE)."""
    snapshot = build_ledger_snapshot(db, dealing, user_directory)
    return _post(db, dealing, snapshot, role, LedgerEntryKind.ACTUAL, actor_user_id, occurred_at or _utcnow())


def record_ledger_for_status(
    db: Session,
    current_status: DealingStatus,
    next_status: DealingStatus,
    dealing: Dealing,
    actor_user_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    user_directory: UserDirectory = default_user_directory,
) -> List[LedgerEntry]:
    """Ledger reaction for a trade that moved (or was created) into ``next_status``."""
    created: List[LedgerEntry] = []

    if next_status in (DealingStatus.APPROVAL_REQUIRED, DealingStatus.PAYMENT_REQUIRED):
        created.extend(post_planned(db, dealing, actor_user_id, user_directory, occurred_at))

    if next_status == DealingStatus.CONFIRM_REQUIRED and current_status != DealingStatus.CONFIRM_REQUIRED:
        entry = post_actual(db, dealing, DealingActor.BUYER, actor_user_id, occurred_at, user_directory)
        if entry is not None:
            created.append(entry)

    if next_status == DealingStatus.COMPLETED and current_status != DealingStatus.COMPLETED:
        entry = post_actual(db, dealing, DealingActor.SELLER, actor_user_id, occurred_at, user_directory)
        if entry is not None:
            created.append(entry)

    return created


def _count_and_amounts(entries: Iterable[LedgerEntry], category: LedgerEntryCategory, kind: LedgerEntryKind) -> List[int]:
    return [e.amount_yen for e in entries if e.category == category and e.kind == kind]


def validate_trade_ledger_consistency(db: Session, trade_id: int) -> List[LedgerWarning]:
    """Compare a trade's status with its ledger rows. Never repairs anything."""
    dealing = db.query(Dealing).filter(Dealing.id == trade_id).first()
    if not dealing:
        return [LedgerWarning("TRADE_NOT_FOUND", f"Trade {trade_id} not found for ledger validation")]

    entries = (
        db.query(LedgerEntry)
        .filter(LedgerEntry.trade_id == trade_id)
        .order_by(LedgerEntry.occurred_at.asc())
        .all()
    )

    status = dealing.status
    warnings: List[LedgerWarning] = []

    checks = [
        (LedgerEntryCategory.PURCHASE, LedgerEntryKind.PLANNED, DealingStatus.APPROVAL_REQUIRED),
        (LedgerEntryCategory.SALE, LedgerEntryKind.PLANNED, DealingStatus.APPROVAL_REQUIRED),
        (LedgerEntryCategory.PURCHASE, LedgerEntryKind.ACTUAL, DealingStatus.CONFIRM_REQUIRED),
        (LedgerEntryCategory.SALE, LedgerEntryKind.ACTUAL, DealingStatus.COMPLETED),
    ]
    for category, kind, required_from in checks:
        amounts = _count_and_amounts(entries, category, kind)
        label = f"{kind.value}_{category.value}"
        if status_at_least(status, required_from) and not amounts:
            warnings.append(LedgerWarning(
                f"{label}_MISSING",
                f"Trade {trade_id} is {status.value} but has no {kind.value.lower()} {category.value.lower()} ledger entry",
            ))
        if len(amounts) > 1:
            warnings.append(LedgerWarning(
                f"{label}_DUPLICATE",
                f"Trade {trade_id} has {len(amounts)} {kind.value.lower()} {category.value.lower()} ledger entries",
            ))

    for category in (LedgerEntryCategory.PURCHASE, LedgerEntryCategory.SALE):
        planned = set(_count_and_amounts(entries, category, LedgerEntryKind.PLANNED))
        actual = set(_count_and_amounts(entries, category, LedgerEntryKind.ACTUAL))
        if planned and actual and planned != actual:
            warnings.append(LedgerWarning(
                "AMOUNT_MISMATCH",
                f"Trade {trade_id} {category.value.lower()} planned {sorted(planned)} differs from actual {sorted(actual)}",
            ))

    if warnings:
        logger.warning("Ledger consistency warnings trade=%s: %s", trade_id, [w.code for w in warnings])
    return warnings


def list_ledger_entries(
    db: Session,
    user_id: str,
    kind: Optional[LedgerEntryKind] = None,
    categories: Optional[List[LedgerEntryCategory]] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    counterparty: Optional[str] = None,
    trade_id: Optional[int] = None,
) -> List[LedgerEntry]:
    query = db.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)

    if kind is not None:
        query = query.filter(LedgerEntry.kind == kind)
    if categories:
        query = query.filter(LedgerEntry.category.in_(categories))
    if date_from is not None:
        query = query.filter(LedgerEntry.occurred_at >= date_from)
    if date_to is not None:
        query = query.filter(LedgerEntry.occurred_at <= date_to)
    if counterparty:
        query = query.filter(LedgerEntry.counterparty_name.ilike(f"%{counterparty}%"))
    if trade_id is not None:
        query = query.filter(LedgerEntry.trade_id == trade_id)

    return query.order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc()).all()


def summarize_balance(db: Session, user_id: str) -> BalanceSummary:
    """Actual balance plus the forecast impact of trades that have not settled for this user."""
    entries = db.query(LedgerEntry).filter(LedgerEntry.user_id == user_id).all()
    trade_ids = {e.trade_id for e in entries if e.trade_id is not None}
    statuses = {}
    if trade_ids:
        rows = db.query(Dealing.id, Dealing.status).filter(Dealing.id.in_(trade_ids)).all()
        statuses = {trade_id: status for trade_id, status in rows}

    actual = 0
    pending_in = 0
    pending_out = 0
    for entry in entries:
        signed = entry.amount_yen if entry.category in _INFLOW_CATEGORIES else -entry.amount_yen
        if entry.kind == LedgerEntryKind.ACTUAL:
            actual += signed
            continue

        if entry.trade_id is not None:
            status = statuses.get(entry.trade_id)
            if status is None:
                continue
            role = TodoRole.BUYER if entry.category == LedgerEntryCategory.PURCHASE else TodoRole.SELLER
            if ledger_timing(status, role) != LedgerTiming.PLANNED:
                continue

        if signed >= 0:
            pending_in += signed
        else:
            pending_out += -signed

    return BalanceSummary(
        actual_balance_yen=actual,
        planned_balance_yen=actual + pending_in - pending_out,
        pending_in_yen=pending_in,
        pending_out_yen=pending_out,
    )
