from datetime import datetime

import pytest

from app.models_sqlalchemy.models import DealingStatus
from app.services.status_graph import (
    DEALING_STATUS_GRAPH,
    DealingActor,
    build_status_update,
    find_transition,
    is_terminal,
    resolve_actor_role,
    status_at_least,
)

EDGES = {
    (DealingStatus.APPROVAL_REQUIRED, DealingStatus.PAYMENT_REQUIRED): DealingActor.SELLER,
    (DealingStatus.APPROVAL_REQUIRED, DealingStatus.CANCELED): DealingActor.ANY,
    (DealingStatus.PAYMENT_REQUIRED, DealingStatus.CONFIRM_REQUIRED): DealingActor.BUYER,
    (DealingStatus.PAYMENT_REQUIRED, DealingStatus.CANCELED): DealingActor.ANY,
    (DealingStatus.CONFIRM_REQUIRED, DealingStatus.COMPLETED): DealingActor.BUYER,
    (DealingStatus.CONFIRM_REQUIRED, DealingStatus.CANCELED): DealingActor.ANY,
}


@pytest.mark.parametrize("current", list(DealingStatus))
@pytest.mark.parametrize("target", list(DealingStatus))
def test_find_transition_only_returns_declared_edges(current, target):
    transition = find_transition(current, target)
    if (current, target) in EDGES:
        assert transition is not None
        assert transition.to == target
        assert transition.actor == EDGES[(current, target)]
    else:
        assert transition is None


def test_terminal_statuses_have_no_edges():
    for status in (DealingStatus.COMPLETED, DealingStatus.CANCELED):
        assert is_terminal(status)
        assert DEALING_STATUS_GRAPH[status] == []
    assert not is_terminal(DealingStatus.CONFIRM_REQUIRED)


def test_side_effect_flags():
    pay = find_transition(DealingStatus.PAYMENT_REQUIRED, DealingStatus.CONFIRM_REQUIRED)
    assert pay.mark_payment_at and not pay.mark_completed_at

    complete = find_transition(DealingStatus.CONFIRM_REQUIRED, DealingStatus.COMPLETED)
    assert complete.mark_payment_at and complete.mark_completed_at

    cancel = find_transition(DealingStatus.APPROVAL_REQUIRED, DealingStatus.CANCELED)
    assert cancel.mark_canceled_at and not cancel.mark_payment_at


def test_build_status_update_sets_first_time_timestamps():
    now = datetime(2026, 10, 18, 12, 0, 0)
    transition = find_transition(DealingStatus.CONFIRM_REQUIRED, DealingStatus.COMPLETED)

    update = build_status_update(transition, {"payment_at": None, "completed_at": None}, now)

    assert update == {
        "status": DealingStatus.COMPLETED,
        "payment_at": now,
        "completed_at": now,
    }


def test_build_status_update_never_overwrites_timestamps():
    earlier = datetime(2026, 10, 1, 8, 0, 0)
    now = datetime(2026, 10, 18, 12, 0, 0)
    transition = find_transition(DealingStatus.CONFIRM_REQUIRED, DealingStatus.COMPLETED)

    update = build_status_update(transition, {"payment_at": earlier, "completed_at": None}, now)

    assert "payment_at" not in update
    assert update["completed_at"] == now


def test_resolve_actor_role():
    assert resolve_actor_role("buyer", "seller", "buyer") == DealingActor.BUYER
    assert resolve_actor_role("buyer", "seller", "seller") == DealingActor.SELLER
    assert resolve_actor_role("buyer", "seller", "someone") == DealingActor.ANY
    assert resolve_actor_role(None, "seller", "someone") == DealingActor.ANY


def test_transition_permits():
    approve = find_transition(DealingStatus.APPROVAL_REQUIRED, DealingStatus.PAYMENT_REQUIRED)
    assert approve.permits(DealingActor.SELLER)
    assert not approve.permits(DealingActor.BUYER)

    cancel = find_transition(DealingStatus.PAYMENT_REQUIRED, DealingStatus.CANCELED)
    assert cancel.permits(DealingActor.BUYER)
    assert cancel.permits(DealingActor.SELLER)


def test_status_at_least_orders_forward_statuses():
    assert status_at_least(DealingStatus.COMPLETED, DealingStatus.CONFIRM_REQUIRED)
    assert status_at_least(DealingStatus.PAYMENT_REQUIRED, DealingStatus.APPROVAL_REQUIRED)
    assert not status_at_least(DealingStatus.APPROVAL_REQUIRED, DealingStatus.PAYMENT_REQUIRED)
    assert not status_at_least(DealingStatus.CANCELED, DealingStatus.APPROVAL_REQUIRED)
