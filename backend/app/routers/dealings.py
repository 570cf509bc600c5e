from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import Dealing, DealingStatus, NaviType
from app.services.auth import get_current_user_id
from app.services.dealing_status import get_trade, transition_trade
from app.services.status_graph import DealingActor, resolve_actor_role
from app.services.todo_projector import (
    LedgerTiming,
    TodoKind,
    TodoRole,
    TodoSection,
    ledger_timing,
    project_todo,
)


router = APIRouter(prefix="/api/trades/records", tags=["trades"])


# ---- Pydantic Schemas ----


class TodoActionResponse(BaseModel):
    label: str
    role: TodoRole
    next_todo: Optional[TodoKind]


class TodoResponse(BaseModel):
    kind: TodoKind
    section: TodoSection
    title: str
    actor: Optional[TodoRole]
    description: str
    primary_action: Optional[TodoActionResponse]


class DealingResponse(BaseModel):
    id: int
    navi_id: int
    navi_type: Optional[NaviType]
    seller_user_id: str
    buyer_user_id: str
    status: DealingStatus
    payload: Optional[Dict[str, Any]]
    payment_at: Optional[datetime]
    completed_at: Optional[datetime]
    canceled_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    viewer_role: TodoRole
    todo: TodoResponse
    ledger_timing: LedgerTiming


class DealingStatusUpdateRequest(BaseModel):
    status: DealingStatus


def _dealing_to_response(dealing: Dealing, viewer_id: str) -> DealingResponse:
    actor = resolve_actor_role(dealing.buyer_user_id, dealing.seller_user_id, viewer_id)
    viewer_role = TodoRole.BUYER if actor == DealingActor.BUYER else TodoRole.SELLER
    navi_type = dealing.navi.navi_type if dealing.navi is not None else None

    projection = project_todo(dealing.status, navi_type, viewer_role)
    action = projection.primary_action

    return DealingResponse(
        id=dealing.id,
        navi_id=dealing.navi_id,
        navi_type=navi_type,
        seller_user_id=dealing.seller_user_id,
        buyer_user_id=dealing.buyer_user_id,
        status=dealing.status,
        payload=dealing.payload,
        payment_at=dealing.payment_at,
        completed_at=dealing.completed_at,
        canceled_at=dealing.canceled_at,
        created_at=dealing.created_at,
        updated_at=dealing.updated_at,
        viewer_role=viewer_role,
        todo=TodoResponse(
            kind=projection.kind,
            section=projection.section,
            title=projection.title,
            actor=projection.actor,
            description=projection.description,
            primary_action=TodoActionResponse(
                label=action.label, role=action.role, next_todo=action.next_todo
            ) if action else None,
        ),
        ledger_timing=ledger_timing(dealing.status, viewer_role),
    )


@router.get("/{trade_id}", response_model=DealingResponse)
async def get_dealing(
    trade_id: int,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> DealingResponse:
    dealing = get_trade(db, trade_id, current_user_id)
    return _dealing_to_response(dealing, current_user_id)


@router.patch("/{trade_id}", response_model=DealingResponse)
async def update_dealing_status(
    trade_id: int,
    payload: DealingStatusUpdateRequest,
    response: Response,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> DealingResponse:
    result = transition_trade(db, trade_id, current_user_id, payload.status)
    if result.warnings:
        response.headers["X-Ledger-Warnings"] = ",".join(w.code for w in result.warnings)
    return _dealing_to_response(result.dealing, current_user_id)
