from decimal import Decimal

from app.services.statement_totals import (
    StatementItem,
    build_items_from_conditions,
    calculate_statement_totals,
    items_from_payload,
    resolve_amount_yen,
    resolve_tax_rate,
    statement_breakdown,
)

TEN_PERCENT = Decimal("0.1")


def test_totals_round_down_to_whole_yen():
    items = [StatementItem(line_id="a", item_name="Board", qty=Decimal(3), unit_price=Decimal("33333"))]

    totals = calculate_statement_totals(items, TEN_PERCENT)

    # 99999 * 1.1 = 109998.9
    assert totals.taxable_subtotal == 99999
    assert totals.total == 109998
    assert totals.tax == 9999


def test_untaxed_lines_are_added_after_tax():
    items = [
        StatementItem(line_id="a", item_name="Cabinet", unit_price=Decimal(100000)),
        StatementItem(line_id="b", item_name="Deposit refund", amount=Decimal(5000), is_taxable=False),
    ]

    totals = calculate_statement_totals(items, TEN_PERCENT)

    assert totals.total == 115000
    assert totals.total_without_tax == 105000


def test_items_from_conditions_include_fees():
    items = build_items_from_conditions({
        "unitPrice": 80000,
        "quantity": 2,
        "shippingFee": 12000,
        "handlingFee": 3000,
        "cardboardFee": {"label": "Crate", "amount": 2000},
        "insuranceFee": {"amount": 0},
        "productName": "Pop'n Music",
        "makerName": "Konami",
    })

    assert [i.line_id for i in items] == ["main-item", "main-shipping", "main-handling", "cardboard-fee"]
    assert items[0].maker == "Konami"
    assert items[0].line_amount == Decimal(160000)
    assert items[3].item_name == "Crate"


def test_items_from_payload_prefers_stored_items():
    payload = {
        "items": [{"lineId": "x", "itemName": "Board", "qty": 1, "unitPrice": 5000}],
        "conditions": {"unitPrice": 99999},
    }

    items = items_from_payload(payload)

    assert len(items) == 1
    assert items[0].line_amount == Decimal(5000)


def test_resolve_tax_rate_falls_back_on_missing_or_negative():
    assert resolve_tax_rate({"conditions": {"taxRate": 0.08}}, TEN_PERCENT) == Decimal("0.08")
    assert resolve_tax_rate({"taxRate": "0.05"}, TEN_PERCENT) == Decimal("0.05")
    assert resolve_tax_rate({"conditions": {"taxRate": -1}}, TEN_PERCENT) == TEN_PERCENT
    assert resolve_tax_rate(None, TEN_PERCENT) == TEN_PERCENT


def test_stored_total_wins_over_recomputation():
    payload = {"conditions": {"unitPrice": 100000}, "totals": {"total": 99000}}
    assert resolve_amount_yen(payload, TEN_PERCENT) == 99000

    payload = {"conditions": {"unitPrice": 100000}}
    assert resolve_amount_yen(payload, TEN_PERCENT) == 110000


def test_statement_breakdown_is_json_ready():
    breakdown = statement_breakdown({"conditions": {"unitPrice": 1000, "quantity": 2}}, TEN_PERCENT)

    assert breakdown["taxRate"] == 0.1
    assert breakdown["items"][0]["amount"] == 2000
    assert breakdown["totals"] == {"taxableSubtotal": 2000, "totalWithoutTax": 2000, "tax": 200, "total": 2200}
