from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import DealingStatus, Navi, NaviStatus, NaviType
from app.services.auth import get_current_user_id
from app.services.negotiation_approval import approve_or_update_negotiation, get_negotiation


router = APIRouter(prefix="/api/trades", tags=["trades"])


# ---- Pydantic Schemas ----


class NaviResponse(BaseModel):
    id: int
    status: NaviStatus
    navi_type: NaviType
    owner_user_id: str
    buyer_user_id: Optional[str]
    listing_id: Optional[str]
    listing_snapshot: Optional[Dict[str, Any]]
    payload: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    trade_id: Optional[int] = None
    trade_status: Optional[DealingStatus] = None


class NaviStatusUpdateRequest(BaseModel):
    status: NaviStatus


def _navi_to_response(navi: Navi, trade_id: Optional[int] = None, trade_status: Optional[DealingStatus] = None) -> NaviResponse:
    return NaviResponse(
        id=navi.id,
        status=navi.status,
        navi_type=navi.navi_type,
        owner_user_id=navi.owner_user_id,
        buyer_user_id=navi.buyer_user_id,
        listing_id=navi.listing_id,
        listing_snapshot=navi.listing_snapshot,
        payload=navi.payload,
        created_at=navi.created_at,
        updated_at=navi.updated_at,
        trade_id=trade_id,
        trade_status=trade_status,
    )


@router.get("/{navi_id}", response_model=NaviResponse)
async def get_navi(
    navi_id: int,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> NaviResponse:
    navi = get_negotiation(db, navi_id, current_user_id)
    dealing = navi.dealing
    return _navi_to_response(
        navi,
        trade_id=dealing.id if dealing else None,
        trade_status=dealing.status if dealing else None,
    )


@router.patch("/{navi_id}", response_model=NaviResponse)
async def update_navi_status(
    navi_id: int,
    payload: NaviStatusUpdateRequest,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> NaviResponse:
    """Owner updates the negotiation status; the buyer approves it into a trade.

    Repeating an approval returns the trade that already exists.
    """
    result = approve_or_update_negotiation(db, navi_id, current_user_id, payload.status)
    return _navi_to_response(result.navi, trade_id=result.trade_id, trade_status=result.trade_status)
