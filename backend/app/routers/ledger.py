from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.errors import InvalidRequest
from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import (
    DealingStatus,
    LedgerEntry,
    LedgerEntryCategory,
    LedgerEntryKind,
    LedgerEntrySource,
)
from app.services.auth import get_current_user_id
from app.services.ledger_poster import list_ledger_entries, summarize_balance


router = APIRouter(prefix="/api/ledger", tags=["ledger"])


class LedgerEntryResponse(BaseModel):
    id: int
    user_id: str
    trade_id: Optional[int]
    category: LedgerEntryCategory
    kind: LedgerEntryKind
    amount_yen: int
    occurred_at: datetime
    counterparty_name: Optional[str]
    maker_name: Optional[str]
    item_name: Optional[str]
    memo: Optional[str]
    balance_after_yen: Optional[int]
    breakdown: Optional[Dict[str, Any]]
    source: LedgerEntrySource
    trade_status_at_creation: Optional[DealingStatus]
    created_at: datetime


class LedgerListResponse(BaseModel):
    items: List[LedgerEntryResponse]
    total: int


class BalanceSummaryResponse(BaseModel):
    actual_balance_yen: int
    planned_balance_yen: int
    pending_in_yen: int
    pending_out_yen: int


def _parse_categories(raw: Optional[List[str]]) -> List[LedgerEntryCategory]:
    """Accept ``?category=SALE&category=PURCHASE`` as well as ``?category=SALE,PURCHASE``."""
    categories: List[LedgerEntryCategory] = []
    for value in raw or []:
        for part in value.split(","):
            part = part.strip().upper()
            if not part:
                continue
            try:
                categories.append(LedgerEntryCategory(part))
            except ValueError:
                raise InvalidRequest(f"Unknown ledger category '{part}'")
    return categories


def _entry_to_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        user_id=entry.user_id,
        trade_id=entry.trade_id,
        category=entry.category,
        kind=entry.kind,
        amount_yen=entry.amount_yen,
        occurred_at=entry.occurred_at,
        counterparty_name=entry.counterparty_name,
        maker_name=entry.maker_name,
        item_name=entry.item_name,
        memo=entry.memo,
        balance_after_yen=entry.balance_after_yen,
        breakdown=entry.breakdown,
        source=entry.source,
        trade_status_at_creation=entry.trade_status_at_creation,
        created_at=entry.created_at,
    )


@router.get("", response_model=LedgerListResponse)
async def get_ledger_entries(
    kind: Optional[LedgerEntryKind] = None,
    category: Optional[List[str]] = Query(None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    counterparty: Optional[str] = None,
    trade_id: Optional[int] = None,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> LedgerListResponse:
    entries = list_ledger_entries(
        db,
        current_user_id,
        kind=kind,
        categories=_parse_categories(category),
        date_from=date_from,
        date_to=date_to,
        counterparty=counterparty,
        trade_id=trade_id,
    )
    return LedgerListResponse(items=[_entry_to_response(e) for e in entries], total=len(entries))


@router.get("/summary", response_model=BalanceSummaryResponse)
async def get_ledger_summary(
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> BalanceSummaryResponse:
    summary = summarize_balance(db, current_user_id)
    return BalanceSummaryResponse(
        actual_balance_yen=summary.actual_balance_yen,
        planned_balance_yen=summary.planned_balance_yen,
        pending_in_yen=summary.pending_in_yen,
        pending_out_yen=summary.pending_out_yen,
    )
