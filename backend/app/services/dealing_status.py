"""Apply status graph transitions to an existing Dealing.

The status write and the ledger postings it triggers share one transaction;
the consistency check runs after commit and only reports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import Conflict, Forbidden, InvalidTransition, NotFound, Unauthorized
from app.models_sqlalchemy.models import Dealing, DealingStatus
from app.services.collaborators import UserDirectory, default_user_directory
from app.services.ledger_poster import LedgerWarning, record_ledger_for_status, validate_trade_ledger_consistency
from app.services.status_graph import (
    DealingActor,
    build_status_update,
    find_transition,
    is_terminal,
    resolve_actor_role,
)
from app.utils.logger import logger


@dataclass
class TransitionResult:
    dealing: Dealing
    changed: bool
    warnings: List[LedgerWarning] = field(default_factory=list)


def _load_dealing(db: Session, trade_id: int, for_update: bool = False) -> Dealing:
    query = db.query(Dealing).filter(Dealing.id == trade_id)
    if for_update:
        query = query.populate_existing().with_for_update()
    dealing = query.first()
    if not dealing:
        raise NotFound()
    return dealing


def _require_party(dealing: Dealing, caller_id: str) -> DealingActor:
    role = resolve_actor_role(dealing.buyer_user_id, dealing.seller_user_id, caller_id)
    if role == DealingActor.ANY:
        raise Forbidden("Only the buyer or the seller of this trade can access it")
    return role


def get_trade(db: Session, trade_id: int, caller_id: Optional[str]) -> Dealing:
    if not caller_id:
        raise Unauthorized()
    dealing = _load_dealing(db, trade_id)
    _require_party(dealing, caller_id)
    return dealing


def transition_trade(
    db: Session,
    trade_id: int,
    caller_id: Optional[str],
    target_status: DealingStatus,
    *,
    user_directory: UserDirectory = default_user_directory,
    now: Optional[datetime] = None,
) -> TransitionResult:
    if not caller_id:
        raise Unauthorized()
    now = now or datetime.now(timezone.utc)

    try:
        dealing = _load_dealing(db, trade_id, for_update=True)
        role = _require_party(dealing, caller_id)
        current_status = dealing.status

        if is_terminal(current_status):
            raise Conflict(f"Trade {trade_id} is {current_status.value} and cannot change")

        if current_status == target_status:
            logger.info("Trade %s already %s; nothing to do", trade_id, target_status.value)
            db.rollback()
            return TransitionResult(dealing=dealing, changed=False)

        transition = find_transition(current_status, target_status)
        if transition is None:
            raise InvalidTransition(
                f"Cannot move trade from {current_status.value} to {target_status.value}"
            )

        if not transition.permits(role):
            raise Forbidden(
                f"Only the {transition.actor.value} can move this trade to {target_status.value}"
            )

        update = build_status_update(
            transition,
            {
                "payment_at": dealing.payment_at,
                "completed_at": dealing.completed_at,
                "canceled_at": dealing.canceled_at,
            },
            now,
        )
        for column, value in update.items():
            setattr(dealing, column, value)
        dealing.updated_at = now
        db.flush()

        record_ledger_for_status(
            db, current_status, target_status, dealing,
            actor_user_id=caller_id, occurred_at=now, user_directory=user_directory,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Trade %s status %s -> %s by %s (%s)",
        trade_id, current_status.value, target_status.value, caller_id, role.value,
    )

    warnings: List[LedgerWarning] = []
    if settings.LEDGER_CONSISTENCY_CHECK:
        warnings = validate_trade_ledger_consistency(db, trade_id)

    db.refresh(dealing)
    return TransitionResult(dealing=dealing, changed=True, warnings=warnings)
