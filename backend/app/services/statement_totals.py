"""Line items and tax-inclusive totals for a trade payload.

The amount every ledger posting uses comes from here, so PLANNED and ACTUAL
rows for one trade agree unless the payload itself changed.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class StatementItem:
    line_id: str
    item_name: str
    qty: Decimal = Decimal(1)
    unit_price: Decimal = Decimal(0)
    amount: Optional[Decimal] = None
    maker: Optional[str] = None
    is_taxable: bool = True

    @property
    def line_amount(self) -> Decimal:
        if self.amount is not None:
            return self.amount
        return self.qty * self.unit_price

    def to_payload(self) -> Dict[str, Any]:
        return {
            "lineId": self.line_id,
            "maker": self.maker,
            "itemName": self.item_name,
            "qty": json_number(self.qty),
            "unitPrice": json_number(self.unit_price),
            "amount": json_number(self.line_amount),
            "isTaxable": self.is_taxable,
        }


@dataclass(frozen=True)
class StatementTotals:
    taxable_subtotal: int
    total_without_tax: int
    tax: int
    total: int

    def to_payload(self) -> Dict[str, int]:
        return {
            "taxableSubtotal": self.taxable_subtotal,
            "totalWithoutTax": self.total_without_tax,
            "tax": self.tax,
            "total": self.total,
        }


def json_number(value: Decimal):
    return int(value) if value == value.to_integral_value() else float(value)


def to_decimal(value: Any, fallback: Optional[Decimal] = None) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return fallback
    if isinstance(value, Decimal):
        return value if value.is_finite() else fallback
    if isinstance(value, (int, float, str)):
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation:
            return fallback
        return parsed if parsed.is_finite() else fallback
    return fallback


def _floor_yen(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def calculate_statement_totals(items: List[StatementItem], tax_rate: Decimal) -> StatementTotals:
    """Totals where the tax-inclusive total is floor(subtotal x (1 + tax_rate))."""
    taxable = sum((i.line_amount for i in items if i.is_taxable), Decimal(0))
    untaxed = sum((i.line_amount for i in items if not i.is_taxable), Decimal(0))

    total = _floor_yen(taxable * (Decimal(1) + tax_rate) + untaxed)
    total_without_tax = _floor_yen(taxable + untaxed)

    return StatementTotals(
        taxable_subtotal=_floor_yen(taxable),
        total_without_tax=total_without_tax,
        tax=total - total_without_tax,
        total=total,
    )


_EXTRA_FEES = (
    ("cardboardFee", "cardboard-fee", "Cardboard"),
    ("nailSheetFee", "nail-sheet-fee", "Nail sheet"),
    ("insuranceFee", "insurance-fee", "Insurance"),
)


def build_items_from_conditions(conditions: Dict[str, Any], line_prefix: str = "main") -> List[StatementItem]:
    qty = to_decimal(conditions.get("quantity")) or Decimal(1)
    unit_price = to_decimal(conditions.get("unitPrice", conditions.get("unitPriceExclTax")), Decimal(0))

    items = [
        StatementItem(
            line_id=f"{line_prefix}-item",
            item_name=_text(conditions.get("productName")) or "Item",
            maker=_text(conditions.get("makerName")),
            qty=qty,
            unit_price=unit_price,
        )
    ]

    shipping_fee = to_decimal(conditions.get("shippingFee"))
    if shipping_fee:
        items.append(StatementItem(line_id=f"{line_prefix}-shipping", item_name="Shipping", amount=shipping_fee))

    handling_fee = to_decimal(conditions.get("handlingFee"))
    if handling_fee:
        items.append(StatementItem(line_id=f"{line_prefix}-handling", item_name="Handling", amount=handling_fee))

    for key, line_id, default_label in _EXTRA_FEES:
        fee = conditions.get(key)
        if not isinstance(fee, dict):
            continue
        amount = to_decimal(fee.get("amount"))
        if not amount:
            continue
        items.append(StatementItem(line_id=line_id, item_name=_text(fee.get("label")) or default_label, amount=amount))

    return items


def _item_from_payload(raw: Dict[str, Any], index: int) -> StatementItem:
    return StatementItem(
        line_id=str(raw.get("lineId") or f"line-{index}"),
        item_name=_text(raw.get("itemName")) or "Item",
        maker=_text(raw.get("maker")),
        qty=to_decimal(raw.get("qty"), Decimal(1)),
        unit_price=to_decimal(raw.get("unitPrice"), Decimal(0)),
        amount=to_decimal(raw.get("amount")),
        is_taxable=raw.get("isTaxable") is not False,
    )


def _conditions(payload: Dict[str, Any]) -> Dict[str, Any]:
    conditions = payload.get("conditions")
    return conditions if isinstance(conditions, dict) else {}


def items_from_payload(payload: Optional[Dict[str, Any]]) -> List[StatementItem]:
    payload = payload or {}
    raw_items = payload.get("items")
    if isinstance(raw_items, list) and raw_items:
        return [_item_from_payload(raw, i) for i, raw in enumerate(raw_items) if isinstance(raw, dict)]
    return build_items_from_conditions(_conditions(payload))


def resolve_tax_rate(payload: Optional[Dict[str, Any]], default: Decimal) -> Decimal:
    payload = payload or {}
    rate = to_decimal(_conditions(payload).get("taxRate"))
    if rate is None:
        rate = to_decimal(payload.get("taxRate"))
    if rate is None or rate < 0:
        return default
    return rate


def stored_total(payload: Optional[Dict[str, Any]]) -> Optional[int]:
    """Explicit total saved with the payload, if any."""
    payload = payload or {}
    candidates = [payload.get("totalAmount")]
    totals = payload.get("totals")
    if isinstance(totals, dict):
        candidates.append(totals.get("total"))
    for candidate in candidates:
        value = to_decimal(candidate)
        if value is not None and value > 0:
            return _floor_yen(value)
    return None


def resolve_amount_yen(payload: Optional[Dict[str, Any]], default_tax_rate: Decimal) -> int:
    explicit = stored_total(payload)
    if explicit is not None:
        return explicit
    items = items_from_payload(payload)
    return calculate_statement_totals(items, resolve_tax_rate(payload, default_tax_rate)).total


def statement_breakdown(payload: Optional[Dict[str, Any]], default_tax_rate: Decimal) -> Dict[str, Any]:
    items = items_from_payload(payload)
    tax_rate = resolve_tax_rate(payload, default_tax_rate)
    totals = calculate_statement_totals(items, tax_rate)
    return {
        "taxRate": float(tax_rate),
        "items": [item.to_payload() for item in items],
        "totals": totals.to_payload(),
    }
