from datetime import datetime

import pytest

from app.errors import Conflict, Forbidden, InvalidTransition, NotFound, Unauthorized
from app.models_sqlalchemy.models import (
    Dealing,
    DealingStatus,
    LedgerEntry,
    LedgerEntryCategory,
    LedgerEntryKind,
    NaviStatus,
)
from app.services.dealing_status import get_trade, transition_trade
from app.services.negotiation_approval import approve_or_update_negotiation

EARLIER = datetime(2026, 10, 1, 8, 0, 0)
NOW = datetime(2026, 10, 18, 9, 30, 0)
LATER = datetime(2026, 10, 20, 17, 0, 0)


def _actual_entries(db, trade_id):
    return (
        db.query(LedgerEntry)
        .filter(LedgerEntry.trade_id == trade_id, LedgerEntry.kind == LedgerEntryKind.ACTUAL)
        .all()
    )


def test_buyer_reports_payment_once(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.PAYMENT_REQUIRED)
    trade_id = dealing.id

    result = transition_trade(db, trade_id, "u2", DealingStatus.CONFIRM_REQUIRED, now=NOW)

    assert result.changed is True
    assert result.dealing.status == DealingStatus.CONFIRM_REQUIRED
    assert result.dealing.payment_at == NOW
    actual = _actual_entries(db, trade_id)
    assert [(e.user_id, e.category) for e in actual] == [("u2", LedgerEntryCategory.PURCHASE)]
    assert actual[0].amount_yen == 220000

    again = transition_trade(db, trade_id, "u2", DealingStatus.CONFIRM_REQUIRED, now=LATER)

    assert again.changed is False
    assert again.dealing.status == DealingStatus.CONFIRM_REQUIRED
    assert again.dealing.payment_at == NOW
    assert len(_actual_entries(db, trade_id)) == 1


def test_completed_trade_cannot_be_canceled(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.COMPLETED, payment_at=EARLIER, completed_at=EARLIER)
    trade_id = dealing.id

    with pytest.raises(Conflict):
        transition_trade(db, trade_id, "u2", DealingStatus.CANCELED, now=NOW)

    reloaded = db.query(Dealing).filter(Dealing.id == trade_id).one()
    assert reloaded.status == DealingStatus.COMPLETED
    assert reloaded.canceled_at is None
    assert reloaded.completed_at == EARLIER


def test_terminal_status_conflicts_even_for_the_same_target(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.CANCELED)
    with pytest.raises(Conflict):
        transition_trade(db, dealing.id, "u1", DealingStatus.CANCELED, now=NOW)


def test_payment_timestamp_is_write_once(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.PAYMENT_REQUIRED, payment_at=EARLIER)
    trade_id = dealing.id

    transition_trade(db, trade_id, "u2", DealingStatus.CONFIRM_REQUIRED, now=NOW)
    result = transition_trade(db, trade_id, "u2", DealingStatus.COMPLETED, now=LATER)

    assert result.dealing.payment_at == EARLIER
    assert result.dealing.completed_at == LATER


def test_completion_posts_seller_actual_sale(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.CONFIRM_REQUIRED)
    trade_id = dealing.id

    transition_trade(db, trade_id, "u2", DealingStatus.COMPLETED, now=NOW)

    actual = _actual_entries(db, trade_id)
    assert [(e.user_id, e.category) for e in actual] == [("u1", LedgerEntryCategory.SALE)]
    assert actual[0].occurred_at == NOW


def test_cancel_sets_canceled_at_and_posts_nothing(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.PAYMENT_REQUIRED)
    trade_id = dealing.id

    result = transition_trade(db, trade_id, "u1", DealingStatus.CANCELED, now=NOW)

    assert result.dealing.status == DealingStatus.CANCELED
    assert result.dealing.canceled_at == NOW
    assert _actual_entries(db, trade_id) == []


def test_skipping_a_step_is_invalid(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.PAYMENT_REQUIRED)
    with pytest.raises(InvalidTransition):
        transition_trade(db, dealing.id, "u2", DealingStatus.COMPLETED, now=NOW)


def test_wrong_party_is_forbidden(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.PAYMENT_REQUIRED)
    trade_id = dealing.id

    # Only the buyer reports payment.
    with pytest.raises(Forbidden):
        transition_trade(db, trade_id, "u1", DealingStatus.CONFIRM_REQUIRED, now=NOW)
    # Outsiders cannot touch the trade at all.
    with pytest.raises(Forbidden):
        transition_trade(db, trade_id, "u3", DealingStatus.CANCELED, now=NOW)

    assert db.query(Dealing).filter(Dealing.id == trade_id).one().status == DealingStatus.PAYMENT_REQUIRED


def test_missing_trade_and_missing_caller(db):
    with pytest.raises(NotFound):
        transition_trade(db, 404, "u2", DealingStatus.CANCELED, now=NOW)
    with pytest.raises(Unauthorized):
        transition_trade(db, 404, None, DealingStatus.CANCELED, now=NOW)


def test_get_trade_requires_a_party(db, make_dealing):
    dealing = make_dealing()
    trade_id = dealing.id

    assert get_trade(db, trade_id, "u1").id == trade_id
    with pytest.raises(Forbidden):
        get_trade(db, trade_id, "u3")


def test_full_lifecycle_leaves_a_consistent_ledger(db, make_navi):
    navi = make_navi(payload={
        "buyerId": "u2",
        "shipping": {"address": "Osaka", "personName": "Tanaka"},
        "conditions": {"unitPrice": 150000, "shippingFee": 20000},
    })
    approval = approve_or_update_negotiation(db, navi.id, "u2", NaviStatus.APPROVED, now=EARLIER)
    trade_id = approval.trade_id

    transition_trade(db, trade_id, "u1", DealingStatus.PAYMENT_REQUIRED, now=EARLIER)
    transition_trade(db, trade_id, "u2", DealingStatus.CONFIRM_REQUIRED, now=NOW)
    result = transition_trade(db, trade_id, "u2", DealingStatus.COMPLETED, now=LATER)

    assert result.warnings == []
    entries = db.query(LedgerEntry).filter(LedgerEntry.trade_id == trade_id).all()
    assert len(entries) == 4
    assert len({e.amount_yen for e in entries}) == 1
