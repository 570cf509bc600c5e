from datetime import datetime

import pytest

from app.models_sqlalchemy.models import (
    DealingStatus,
    LedgerEntry,
    LedgerEntryCategory,
    LedgerEntryKind,
)
from app.services import ledger_poster
from app.services.ledger_poster import (
    LedgerMetadata,
    build_ledger_snapshot,
    ensure_entry,
    list_ledger_entries,
    post_actual,
    post_planned,
    record_ledger_for_status,
    summarize_balance,
    validate_trade_ledger_consistency,
)
from app.services.status_graph import DealingActor

NOW = datetime(2026, 10, 18, 9, 30, 0)


def _entries(db, trade_id):
    return db.query(LedgerEntry).filter(LedgerEntry.trade_id == trade_id).order_by(LedgerEntry.id).all()


def test_ensure_entry_writes_once_per_key(db, make_dealing):
    dealing = make_dealing()

    first, created = ensure_entry(db, "u2", LedgerEntryCategory.PURCHASE, LedgerEntryKind.PLANNED, 220000, dealing.id)
    second, created_again = ensure_entry(db, "u2", LedgerEntryCategory.PURCHASE, LedgerEntryKind.PLANNED, 220000, dealing.id)
    db.commit()

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert len(_entries(db, dealing.id)) == 1
    assert first.dedupe_key == f"{dealing.id}:PURCHASE:PLANNED:TRADE_STATUS_TRANSITION"


def test_ensure_entry_rejects_non_positive_amounts(db, make_dealing):
    dealing = make_dealing()
    with pytest.raises(ValueError):
        ensure_entry(db, "u2", LedgerEntryCategory.PURCHASE, LedgerEntryKind.PLANNED, 0, dealing.id)


def test_ensure_entry_resolves_a_lost_insert_race(db, make_dealing, monkeypatch):
    dealing = make_dealing()
    winner, _ = ensure_entry(db, "u2", LedgerEntryCategory.PURCHASE, LedgerEntryKind.ACTUAL, 220000, dealing.id)
    db.commit()

    # The losing caller looked before the winner committed.
    real_find = ledger_poster.find_entry
    calls = []

    def stale_find(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(ledger_poster, "find_entry", stale_find)

    entry, created = ensure_entry(
        db, "u2", LedgerEntryCategory.PURCHASE, LedgerEntryKind.ACTUAL, 220000, dealing.id,
        metadata=LedgerMetadata(occurred_at=NOW),
    )
    db.commit()

    assert created is False
    assert entry.id == winner.id
    assert len(_entries(db, dealing.id)) == 1


def test_post_planned_books_both_parties_with_equal_amounts(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.APPROVAL_REQUIRED)

    created = post_planned(db, dealing, actor_user_id="u2")
    db.commit()

    assert {(e.user_id, e.category) for e in created} == {
        ("u2", LedgerEntryCategory.PURCHASE),
        ("u1", LedgerEntryCategory.SALE),
    }
    assert {e.amount_yen for e in created} == {220000}
    purchase = next(e for e in created if e.category == LedgerEntryCategory.PURCHASE)
    assert purchase.counterparty_name == "Arcade Seller Co."
    assert purchase.item_name == "Taiko no Tatsujin"
    assert purchase.breakdown["totals"]["total"] == 220000

    assert post_planned(db, dealing) == []


def test_snapshot_prefers_payload_company_names(db, make_dealing):
    dealing = make_dealing(payload={
        "conditions": {"unitPrice": 1000},
        "sellerCompanyName": "Renamed Seller",
    })

    snapshot = build_ledger_snapshot(db, dealing)

    assert snapshot.buyer_counterparty == "Renamed Seller"
    assert snapshot.seller_counterparty == "Game Center Buyer"
    assert snapshot.amount_yen == 1100


def test_zero_amount_trade_is_skipped(db, make_dealing):
    dealing = make_dealing(payload={"conditions": {"unitPrice": 0}})

    assert post_planned(db, dealing) == []
    assert post_actual(db, dealing, DealingActor.BUYER) is None


def test_record_ledger_for_status_reactions(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.CONFIRM_REQUIRED)

    created = record_ledger_for_status(db, DealingStatus.PAYMENT_REQUIRED, DealingStatus.CONFIRM_REQUIRED, dealing, occurred_at=NOW)
    assert [(e.category, e.kind) for e in created] == [(LedgerEntryCategory.PURCHASE, LedgerEntryKind.ACTUAL)]
    assert created[0].occurred_at == NOW

    # Re-applying the same status posts nothing.
    assert record_ledger_for_status(db, DealingStatus.CONFIRM_REQUIRED, DealingStatus.CONFIRM_REQUIRED, dealing) == []

    dealing.status = DealingStatus.COMPLETED
    created = record_ledger_for_status(db, DealingStatus.CONFIRM_REQUIRED, DealingStatus.COMPLETED, dealing, occurred_at=NOW)
    assert [(e.user_id, e.category, e.kind) for e in created] == [("u1", LedgerEntryCategory.SALE, LedgerEntryKind.ACTUAL)]

    assert record_ledger_for_status(db, DealingStatus.CONFIRM_REQUIRED, DealingStatus.CANCELED, dealing) == []


def test_validate_reports_missing_entries(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.CONFIRM_REQUIRED)

    codes = {w.code for w in validate_trade_ledger_consistency(db, dealing.id)}

    assert codes == {"PLANNED_PURCHASE_MISSING", "PLANNED_SALE_MISSING", "ACTUAL_PURCHASE_MISSING"}


def test_validate_reports_amount_mismatch(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.CONFIRM_REQUIRED)
    post_planned(db, dealing)
    dealing.payload = {"conditions": {"unitPrice": 300000}}
    post_actual(db, dealing, DealingActor.BUYER, occurred_at=NOW)
    db.commit()

    warnings = validate_trade_ledger_consistency(db, dealing.id)

    assert [w.code for w in warnings] == ["AMOUNT_MISMATCH"]
    assert "PURCHASE" in warnings[0].message.upper()


def test_validate_unknown_trade(db):
    assert [w.code for w in validate_trade_ledger_consistency(db, 404)] == ["TRADE_NOT_FOUND"]


def test_list_ledger_entries_filters(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.CONFIRM_REQUIRED)
    post_planned(db, dealing)
    post_actual(db, dealing, DealingActor.BUYER, occurred_at=NOW)
    db.commit()

    buyer_entries = list_ledger_entries(db, "u2")
    assert len(buyer_entries) == 2
    assert {e.user_id for e in buyer_entries} == {"u2"}

    assert len(list_ledger_entries(db, "u2", kind=LedgerEntryKind.ACTUAL)) == 1
    assert list_ledger_entries(db, "u2", categories=[LedgerEntryCategory.SALE]) == []
    assert len(list_ledger_entries(db, "u1", counterparty="game center")) == 1
    assert len(list_ledger_entries(db, "u2", trade_id=dealing.id)) == 2


def test_summarize_balance_counts_unsettled_planned_amounts(db, make_dealing):
    dealing = make_dealing(status=DealingStatus.CONFIRM_REQUIRED)
    post_planned(db, dealing)
    post_actual(db, dealing, DealingActor.BUYER, occurred_at=NOW)
    db.commit()

    buyer = summarize_balance(db, "u2")
    seller = summarize_balance(db, "u1")

    # The buyer has paid: the PLANNED purchase no longer counts as pending.
    assert buyer.actual_balance_yen == -220000
    assert buyer.pending_out_yen == 0
    assert buyer.planned_balance_yen == -220000

    # The seller has not been paid yet.
    assert seller.actual_balance_yen == 0
    assert seller.pending_in_yen == 220000
    assert seller.planned_balance_yen == 220000
