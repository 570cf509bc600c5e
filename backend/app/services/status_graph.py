"""One-direction status graph for Dealing (trade) records.

Edges:

- APPROVAL_REQUIRED -> PAYMENT_REQUIRED: seller approves conditions and opens the payment step.
- PAYMENT_REQUIRED -> CONFIRM_REQUIRED: buyer reports payment; payment_at is recorded once.
- CONFIRM_REQUIRED -> COMPLETED: buyer confirms settlement; payment_at/completed_at recorded once.
- any non-terminal -> CANCELED: either party aborts.

COMPLETED and CANCELED are terminal. Pure functions only, no I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import enum
from typing import Dict, List, Optional

from app.models_sqlalchemy.models import DealingStatus


class DealingActor(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ANY = "any"


@dataclass(frozen=True)
class StatusTransition:
    to: DealingStatus
    actor: DealingActor
    notes: str
    mark_payment_at: bool = False
    mark_completed_at: bool = False
    mark_canceled_at: bool = False

    def permits(self, role: DealingActor) -> bool:
        return self.actor == DealingActor.ANY or self.actor == role


DEALING_STATUS_GRAPH: Dict[DealingStatus, List[StatusTransition]] = {
    DealingStatus.APPROVAL_REQUIRED: [
        StatusTransition(
            to=DealingStatus.PAYMENT_REQUIRED,
            actor=DealingActor.SELLER,
            notes="Seller approves conditions and opens the payment step.",
        ),
        StatusTransition(
            to=DealingStatus.CANCELED,
            actor=DealingActor.ANY,
            notes="Either party aborts before payment is requested.",
            mark_canceled_at=True,
        ),
    ],
    DealingStatus.PAYMENT_REQUIRED: [
        StatusTransition(
            to=DealingStatus.CONFIRM_REQUIRED,
            actor=DealingActor.BUYER,
            notes="Buyer reports payment.",
            mark_payment_at=True,
        ),
        StatusTransition(
            to=DealingStatus.CANCELED,
            actor=DealingActor.ANY,
            notes="Cancel before payment confirmation.",
            mark_canceled_at=True,
        ),
    ],
    DealingStatus.CONFIRM_REQUIRED: [
        StatusTransition(
            to=DealingStatus.COMPLETED,
            actor=DealingActor.BUYER,
            notes="Buyer confirms settlement.",
            mark_payment_at=True,
            mark_completed_at=True,
        ),
        StatusTransition(
            to=DealingStatus.CANCELED,
            actor=DealingActor.ANY,
            notes="Abort during the confirmation window.",
            mark_canceled_at=True,
        ),
    ],
    DealingStatus.COMPLETED: [],
    DealingStatus.CANCELED: [],
}

TERMINAL_DEALING_STATUSES = frozenset({DealingStatus.COMPLETED, DealingStatus.CANCELED})

_STATUS_RANK: Dict[DealingStatus, int] = {
    DealingStatus.CANCELED: 0,
    DealingStatus.APPROVAL_REQUIRED: 1,
    DealingStatus.PAYMENT_REQUIRED: 2,
    DealingStatus.CONFIRM_REQUIRED: 3,
    DealingStatus.COMPLETED: 4,
}


def is_terminal(status: DealingStatus) -> bool:
    return status in TERMINAL_DEALING_STATUSES


def status_rank(status: DealingStatus) -> int:
    return _STATUS_RANK.get(status, 0)


def status_at_least(status: DealingStatus, target: DealingStatus) -> bool:
    return status_rank(status) >= status_rank(target)


def find_transition(current: DealingStatus, target: DealingStatus) -> Optional[StatusTransition]:
    """Return the edge current -> target, or None when the graph has no such edge.

    None is a rejected transition, never something to retry.
    """
    for transition in DEALING_STATUS_GRAPH.get(current, []):
        if transition.to == target:
            return transition
    return None


def build_status_update(
    transition: StatusTransition,
    existing: Dict[str, Optional[datetime]],
    now: datetime,
) -> Dict[str, object]:
    """Compute the column update for ``transition``.

    Timestamps are write-once: a flagged timestamp is only included when the
    matching key in ``existing`` is empty.
    """
    update: Dict[str, object] = {"status": transition.to}

    if transition.mark_payment_at and not existing.get("payment_at"):
        update["payment_at"] = now
    if transition.mark_completed_at and not existing.get("completed_at"):
        update["completed_at"] = now
    if transition.mark_canceled_at and not existing.get("canceled_at"):
        update["canceled_at"] = now

    return update


def resolve_actor_role(buyer_user_id: Optional[str], seller_user_id: Optional[str], caller_id: str) -> DealingActor:
    if buyer_user_id and caller_id == buyer_user_id:
        return DealingActor.BUYER
    if seller_user_id and caller_id == seller_user_id:
        return DealingActor.SELLER
    return DealingActor.ANY
