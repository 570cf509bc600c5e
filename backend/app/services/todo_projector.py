"""Derive the single outstanding "todo" for a trade from its status.

Todo kinds are a presentation vocabulary that runs parallel to
``DealingStatus``. The two enumerations are tied together by
``STATUS_TO_TODO_KIND``; ``_verify_status_todo_mapping`` runs at import time
so a status added without a todo kind (or the reverse) fails loudly.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
import enum
from typing import Dict, List, Optional

from app.models_sqlalchemy.models import DealingStatus, NaviType


class TodoKind(str, enum.Enum):
    APPLICATION_SENT = "application_sent"
    APPLICATION_APPROVED = "application_approved"
    PAYMENT_CONFIRMED = "payment_confirmed"
    TRADE_COMPLETED = "trade_completed"
    TRADE_CANCELED = "trade_canceled"
    # Extension slot for workflow variants; never mapped to a DealingStatus.
    X_TEST_SHIPPING_ADDRESS_FIX = "x_test_shipping_address_fix"


class TodoSection(str, enum.Enum):
    APPROVAL = "approval"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"
    CANCELED = "canceled"


class TodoRole(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"


class TodoState(str, enum.Enum):
    OPEN = "open"
    DONE = "done"


class LedgerTiming(str, enum.Enum):
    NONE = "none"
    PLANNED = "planned"
    ACTUAL = "actual"


@dataclass(frozen=True)
class TodoAction:
    label: str
    role: TodoRole
    next_todo: Optional[TodoKind] = None


@dataclass(frozen=True)
class TodoDef:
    section: TodoSection
    title: str
    buyer_description: str
    seller_description: str
    primary_action: Optional[TodoAction] = None

    def description_for(self, role: TodoRole) -> str:
        return self.buyer_description if role == TodoRole.BUYER else self.seller_description


@dataclass(frozen=True)
class TodoItem:
    kind: TodoKind
    assignee: TodoRole
    state: TodoState


@dataclass(frozen=True)
class TodoProjection:
    kind: TodoKind
    section: TodoSection
    title: str
    actor: Optional[TodoRole]
    description: str
    primary_action: Optional[TodoAction]
    navi_type: Optional[NaviType]


TODO_DEFS: Dict[TodoKind, TodoDef] = {
    TodoKind.APPLICATION_SENT: TodoDef(
        section=TodoSection.APPROVAL,
        title="Awaiting approval",
        buyer_description="The seller sent a request. Review the conditions and approve it.",
        seller_description="The request was sent. Wait for the buyer to approve it.",
        primary_action=TodoAction("Approve", TodoRole.BUYER, TodoKind.APPLICATION_APPROVED),
    ),
    TodoKind.APPLICATION_APPROVED: TodoDef(
        section=TodoSection.PAYMENT,
        title="Awaiting payment",
        buyer_description="Transfer the payment before the scheduled shipment date.",
        seller_description="Wait for the buyer's payment.",
        primary_action=TodoAction("Payment sent", TodoRole.BUYER, TodoKind.PAYMENT_CONFIRMED),
    ),
    TodoKind.PAYMENT_CONFIRMED: TodoDef(
        section=TodoSection.CONFIRMATION,
        title="Awaiting confirmation",
        buyer_description="Check the machine works and complete the trade.",
        seller_description="Wait for the buyer to confirm the machine.",
        primary_action=TodoAction("Confirm", TodoRole.BUYER, TodoKind.TRADE_COMPLETED),
    ),
    TodoKind.TRADE_COMPLETED: TodoDef(
        section=TodoSection.COMPLETED,
        title="Completed",
        buyer_description="The trade is complete.",
        seller_description="The trade is complete.",
    ),
    TodoKind.TRADE_CANCELED: TodoDef(
        section=TodoSection.CANCELED,
        title="Canceled",
        buyer_description="This trade was canceled.",
        seller_description="This trade was canceled.",
    ),
    TodoKind.X_TEST_SHIPPING_ADDRESS_FIX: TodoDef(
        section=TodoSection.APPROVAL,
        title="Fix shipping address",
        buyer_description="Check and correct the shipping address.",
        seller_description="Wait for the buyer to correct the shipping address.",
    ),
}

# Online inquiries are opened by the buyer, so the seller answers the application.
_ONLINE_INQUIRY_APPLICATION = replace(
    TODO_DEFS[TodoKind.APPLICATION_SENT],
    buyer_description="Your inquiry was sent. Wait for the seller to answer it.",
    seller_description="A buyer sent an inquiry. Review it and answer.",
    primary_action=TodoAction("Answer", TodoRole.SELLER, TodoKind.APPLICATION_APPROVED),
)

STATUS_TO_TODO_KIND: Dict[DealingStatus, TodoKind] = {
    DealingStatus.APPROVAL_REQUIRED: TodoKind.APPLICATION_SENT,
    DealingStatus.PAYMENT_REQUIRED: TodoKind.APPLICATION_APPROVED,
    DealingStatus.CONFIRM_REQUIRED: TodoKind.PAYMENT_CONFIRMED,
    DealingStatus.COMPLETED: TodoKind.TRADE_COMPLETED,
    DealingStatus.CANCELED: TodoKind.TRADE_CANCELED,
}

TODO_KIND_TO_STATUS: Dict[TodoKind, DealingStatus] = {kind: status for status, kind in STATUS_TO_TODO_KIND.items()}

EXTENSION_TODO_KINDS = frozenset({TodoKind.X_TEST_SHIPPING_ADDRESS_FIX})

# Forward order of the production kinds; CANCELED is handled separately.
_TODO_SEQUENCE: List[TodoKind] = [
    TodoKind.APPLICATION_SENT,
    TodoKind.APPLICATION_APPROVED,
    TodoKind.PAYMENT_CONFIRMED,
    TodoKind.TRADE_COMPLETED,
]


def _verify_status_todo_mapping() -> None:
    missing_statuses = set(DealingStatus) - set(STATUS_TO_TODO_KIND)
    if missing_statuses:
        raise RuntimeError(f"DealingStatus values without a todo kind: {sorted(s.value for s in missing_statuses)}")

    production_kinds = set(TodoKind) - EXTENSION_TODO_KINDS
    if set(TODO_KIND_TO_STATUS) != production_kinds or len(TODO_KIND_TO_STATUS) != len(STATUS_TO_TODO_KIND):
        raise RuntimeError("Todo kinds and DealingStatus values are out of step")

    missing_defs = set(TodoKind) - set(TODO_DEFS)
    if missing_defs:
        raise RuntimeError(f"Todo kinds without a definition: {sorted(k.value for k in missing_defs)}")


_verify_status_todo_mapping()


def map_status_to_todo_kind(status: DealingStatus) -> TodoKind:
    return STATUS_TO_TODO_KIND[status]


def map_todo_kind_to_status(kind: TodoKind) -> DealingStatus:
    if kind not in TODO_KIND_TO_STATUS:
        raise ValueError(f"{kind.value} is an extension todo kind with no trade status")
    return TODO_KIND_TO_STATUS[kind]


def todo_def(kind: TodoKind, navi_type: Optional[NaviType] = None) -> TodoDef:
    if kind == TodoKind.APPLICATION_SENT and navi_type == NaviType.ONLINE_INQUIRY:
        return _ONLINE_INQUIRY_APPLICATION
    return TODO_DEFS[kind]


def _default_assignee(kind: TodoKind, navi_type: Optional[NaviType] = None) -> TodoRole:
    action = todo_def(kind, navi_type).primary_action
    return action.role if action else TodoRole.BUYER


def build_todos_from_status(status: DealingStatus, navi_type: Optional[NaviType] = None) -> List[TodoItem]:
    """Rebuild the todo history implied by ``status``: every earlier step done, the current one open."""
    if status == DealingStatus.CANCELED:
        return [TodoItem(TodoKind.TRADE_CANCELED, _default_assignee(TodoKind.TRADE_CANCELED), TodoState.DONE)]

    current = map_status_to_todo_kind(status)
    todos: List[TodoItem] = []
    for kind in _TODO_SEQUENCE:
        if kind == current:
            # The last step has nothing left to do.
            state = TodoState.DONE if kind == TodoKind.TRADE_COMPLETED else TodoState.OPEN
            todos.append(TodoItem(kind, _default_assignee(kind, navi_type), state))
            break
        todos.append(TodoItem(kind, _default_assignee(kind, navi_type), TodoState.DONE))
    return todos


def complete_todo(todos: List[TodoItem], completed_kind: TodoKind, navi_type: Optional[NaviType] = None) -> List[TodoItem]:
    updated = [replace(t, state=TodoState.DONE) if t.kind == completed_kind else t for t in todos]

    action = todo_def(completed_kind, navi_type).primary_action
    if not action or not action.next_todo:
        return updated

    next_kind = action.next_todo
    # The final step is closed as soon as it is reached.
    next_state = TodoState.DONE if not todo_def(next_kind, navi_type).primary_action else TodoState.OPEN
    return updated + [TodoItem(next_kind, _default_assignee(next_kind, navi_type), next_state)]


def get_open_todo(todos: List[TodoItem]) -> Optional[TodoItem]:
    for todo in todos:
        if todo.state == TodoState.OPEN:
            return todo
    return None


def derive_status_from_todos(todos: List[TodoItem]) -> DealingStatus:
    if any(t.kind == TodoKind.TRADE_CANCELED for t in todos):
        return DealingStatus.CANCELED

    open_todo = get_open_todo(todos)
    if open_todo and open_todo.kind in TODO_KIND_TO_STATUS:
        return TODO_KIND_TO_STATUS[open_todo.kind]

    reached = [t.kind for t in todos if t.kind in TODO_KIND_TO_STATUS]
    if not reached:
        return DealingStatus.APPROVAL_REQUIRED
    furthest = max(reached, key=_TODO_SEQUENCE.index)
    return TODO_KIND_TO_STATUS[furthest]


def project_todo(status: DealingStatus, navi_type: Optional[NaviType], viewer_role: TodoRole) -> TodoProjection:
    todos = build_todos_from_status(status, navi_type)
    open_todo = get_open_todo(todos)
    kind = open_todo.kind if open_todo else map_status_to_todo_kind(status)
    definition = todo_def(kind, navi_type)
    action = definition.primary_action

    return TodoProjection(
        kind=kind,
        section=definition.section,
        title=definition.title,
        actor=action.role if action else None,
        description=definition.description_for(viewer_role),
        primary_action=action if action and action.role == viewer_role else None,
        navi_type=navi_type,
    )


def ledger_timing(status: DealingStatus, role: TodoRole) -> LedgerTiming:
    """Classify whether ``role``'s side of a trade is still a forecast or has settled.

    The buyer's money has moved once payment is reported (payment_confirmed);
    the seller's once the trade completes. Canceled trades count for neither.
    """
    kind = map_status_to_todo_kind(status)
    if kind == TodoKind.TRADE_CANCELED:
        return LedgerTiming.NONE

    settled_from = TodoKind.PAYMENT_CONFIRMED if role == TodoRole.BUYER else TodoKind.TRADE_COMPLETED
    if _TODO_SEQUENCE.index(kind) >= _TODO_SEQUENCE.index(settled_from):
        return LedgerTiming.ACTUAL
    return LedgerTiming.PLANNED
