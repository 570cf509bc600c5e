"""Turn an approved Navi (negotiation) into exactly one Dealing (trade).

Concurrent approvals of the same Navi collapse onto a single Dealing through
the unique ``dealings.navi_id`` constraint and an INSERT ... ON CONFLICT DO
NOTHING; whichever row the follow-up SELECT returns is authoritative.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import BuyerRequired, Conflict, Forbidden, NotFound, ShippingInfoMissing, Unauthorized
from app.models_sqlalchemy.models import Dealing, DealingStatus, Listing, Navi, NaviStatus
from app.services.collaborators import ListingStore, UserDirectory, default_listing_store, default_user_directory
from app.services.ledger_poster import record_ledger_for_status
from app.services.statement_totals import (
    build_items_from_conditions,
    calculate_statement_totals,
    json_number,
    resolve_tax_rate,
    to_decimal,
)
from app.utils.logger import logger


_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_SHIPPING_KEYS = ("buyerShippingAddress", "shipping", "shippingInfo")


@dataclass
class ApprovalResult:
    navi: Navi
    dealing: Optional[Dealing] = None
    created: bool = False

    @property
    def trade_id(self) -> Optional[int]:
        return self.dealing.id if self.dealing is not None else None

    @property
    def trade_status(self) -> Optional[DealingStatus]:
        return self.dealing.status if self.dealing is not None else None


@dataclass(frozen=True)
class ShippingInfo:
    company_name: Optional[str] = None
    address: Optional[str] = None
    tel: Optional[str] = None
    person_name: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.address and self.address.strip()) and bool(self.person_name and self.person_name.strip())


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def resolve_buyer_user_id(navi: Navi) -> Optional[str]:
    """Buyer id from the normalized column, else from ``payload["buyerId"]``.

    The payload fallback only exists for legacy rows created before
    ``navis.buyer_user_id`` was populated. New writes always fill the column.
    """
    if navi.buyer_user_id:
        return navi.buyer_user_id
    buyer_id = _as_dict(navi.payload).get("buyerId")
    if isinstance(buyer_id, str) and buyer_id.strip():
        return buyer_id
    return None


def extract_shipping_info(payload: Any) -> Optional[ShippingInfo]:
    payload = _as_dict(payload)
    shipping = None
    for key in _SHIPPING_KEYS:
        if payload.get(key) is not None:
            shipping = payload[key]
            break
    if shipping is None and ("address" in payload or "personName" in payload):
        # Phone agreements record the destination directly on the payload.
        shipping = payload
    if isinstance(shipping, dict) and isinstance(shipping.get("shipping"), dict):
        # shippingInfo: {"shipping": {...}, "contact": {...}}
        shipping = shipping["shipping"]
    if not isinstance(shipping, dict):
        return None
    return ShippingInfo(
        company_name=_str_or_none(shipping.get("companyName")),
        address=_str_or_none(shipping.get("address")),
        tel=_str_or_none(shipping.get("tel")),
        person_name=_str_or_none(shipping.get("personName")),
    )


def check_navi_status_allows(navi: Navi, target_status: NaviStatus) -> None:
    """APPROVED and REJECTED are final; only a SENT negotiation can be approved.

    Re-approving an APPROVED Navi is let through so the existing Dealing can be returned.
    """
    current = navi.status
    if current == NaviStatus.REJECTED:
        raise Conflict(f"Negotiation {navi.id} was rejected and cannot change")
    if current == NaviStatus.APPROVED and target_status != NaviStatus.APPROVED:
        raise Conflict(f"Negotiation {navi.id} is already approved")
    if target_status == NaviStatus.APPROVED and current == NaviStatus.DRAFT:
        raise Conflict(f"Negotiation {navi.id} has not been sent yet")


def check_negotiation_preconditions(navi: Navi, caller_id: str, target_status: NaviStatus) -> Optional[str]:
    """Validate the caller and the Navi for ``target_status``; return the resolved buyer id.

    Raises Forbidden, Conflict, BuyerRequired or ShippingInfoMissing. Nothing is written.
    """
    buyer_id = resolve_buyer_user_id(navi)
    is_owner = navi.owner_user_id == caller_id
    is_buyer = buyer_id is not None and buyer_id == caller_id

    if not is_owner and not is_buyer:
        raise Forbidden("Only the owner or the buyer of this negotiation can change it")

    check_navi_status_allows(navi, target_status)

    if target_status == NaviStatus.APPROVED:
        if not buyer_id:
            raise BuyerRequired()
        if not is_buyer:
            raise Forbidden("Only the buyer can approve a negotiation")
        shipping = extract_shipping_info(navi.payload)
        if shipping is None or not shipping.is_complete:
            raise ShippingInfoMissing()
    elif not is_owner:
        raise Forbidden("Only the owner can set this status")

    return buyer_id


def build_normalized_payload(
    db: Session,
    navi: Navi,
    listing: Optional[Listing],
    buyer_id: Optional[str],
    listing_store: ListingStore,
    user_directory: UserDirectory,
) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    """Return ``(payload, listing_snapshot)`` with conditions, items and totals filled in."""
    payload = dict(_as_dict(navi.payload))
    conditions = _as_dict(payload.get("conditions"))

    listing_snapshot = navi.listing_snapshot or payload.get("listingSnapshot")
    if not listing_snapshot and listing is not None:
        listing_snapshot = listing_store.build_snapshot(listing)
    snapshot = _as_dict(listing_snapshot)

    maker_name = (
        _str_or_none(conditions.get("makerName"))
        or _str_or_none(snapshot.get("maker"))
        or (listing.maker if listing is not None else None)
    )
    product_name = (
        _str_or_none(conditions.get("productName"))
        or _str_or_none(snapshot.get("machineName"))
        or _str_or_none(snapshot.get("title"))
        or (listing.machine_name if listing is not None else None)
        or "Item"
    )

    unit_price = to_decimal(
        conditions.get("unitPrice", conditions.get("unitPriceExclTax")),
        to_decimal(snapshot.get("unitPriceExclTax"), Decimal(0)),
    )
    quantity = to_decimal(conditions.get("quantity")) or Decimal(1)
    shipping_fee = to_decimal(conditions.get("shippingFee"), Decimal(0))
    handling_fee = to_decimal(conditions.get("handlingFee"), Decimal(0))
    tax_rate = resolve_tax_rate(payload, Decimal(str(settings.DEFAULT_TAX_RATE)))
    memo = _str_or_none(conditions.get("memo")) or _str_or_none(payload.get("memo")) or ""

    normalized_conditions = {
        **conditions,
        "unitPrice": json_number(unit_price),
        "quantity": json_number(quantity),
        "shippingFee": json_number(shipping_fee),
        "handlingFee": json_number(handling_fee),
        "taxRate": float(tax_rate),
        "makerName": maker_name,
        "productName": product_name,
        "memo": memo,
    }

    items = build_items_from_conditions(normalized_conditions, line_prefix=f"navi-{navi.id}")
    totals = calculate_statement_totals(items, tax_rate)

    payload.update(
        buyerCompanyName=user_directory.company_name(db, buyer_id) or payload.get("buyerCompanyName"),
        sellerCompanyName=user_directory.company_name(db, navi.owner_user_id) or payload.get("sellerCompanyName"),
        listingSnapshot=listing_snapshot or None,
        conditions=normalized_conditions,
        items=[item.to_payload() for item in items],
        totals=totals.to_payload(),
    )
    return payload, listing_snapshot or None


def _initial_dealing_status() -> DealingStatus:
    status = DealingStatus(settings.TRADE_INITIAL_STATUS)
    if status not in (DealingStatus.APPROVAL_REQUIRED, DealingStatus.PAYMENT_REQUIRED):
        raise ValueError(f"TRADE_INITIAL_STATUS must be APPROVAL_REQUIRED or PAYMENT_REQUIRED, got {status.value}")
    return status


def create_dealing_once(
    db: Session,
    navi: Navi,
    buyer_id: str,
    status: DealingStatus,
    payload: Dict[str, Any],
    now: datetime,
) -> Tuple[Dealing, bool]:
    """Insert the Dealing for ``navi`` unless one exists; return ``(dealing, created)``.

    The conflict branch writes nothing. The returned row is whatever holds
    ``navi_id`` after the statement, which may belong to a concurrent caller.
    """
    values = dict(
        seller_user_id=navi.owner_user_id,
        buyer_user_id=buyer_id,
        status=status,
        payload=payload,
        navi_id=navi.id,
        created_at=now,
        updated_at=now,
    )

    insert = _DIALECT_INSERTS.get(db.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(Dealing).values(**values).on_conflict_do_nothing(index_elements=["navi_id"])
        inserted_id = db.execute(stmt.returning(Dealing.id)).scalar()
        created = inserted_id is not None
    else:
        try:
            with db.begin_nested():
                db.add(Dealing(**values))
            created = True
        except IntegrityError:
            created = False

    dealing = (
        db.query(Dealing)
        .filter(Dealing.navi_id == navi.id)
        .populate_existing()
        .one()
    )
    return dealing, created


def _mark_listing_sold(db: Session, listing_store: ListingStore, listing_id: str, navi_id: int) -> None:
    try:
        with db.begin_nested():
            listing_store.mark_sold(db, listing_id)
    except Exception as e:
        logger.warning("Could not mark listing %s SOLD for navi %s: %s", listing_id, navi_id, e)


def get_negotiation(db: Session, navi_id: int, caller_id: Optional[str]) -> Navi:
    if not caller_id:
        raise Unauthorized()
    navi = db.query(Navi).filter(Navi.id == navi_id).first()
    if not navi:
        raise NotFound()
    if caller_id not in (navi.owner_user_id, resolve_buyer_user_id(navi)):
        raise Forbidden()
    return navi


def approve_or_update_negotiation(
    db: Session,
    navi_id: int,
    caller_id: Optional[str],
    target_status: NaviStatus,
    *,
    listing_store: ListingStore = default_listing_store,
    user_directory: UserDirectory = default_user_directory,
    now: Optional[datetime] = None,
) -> ApprovalResult:
    """Set a Navi's status; approving it also creates its Dealing and PLANNED ledger rows.

    All writes commit together. Any exception rolls the session back.
    """
    if not caller_id:
        raise Unauthorized()
    now = now or datetime.now(timezone.utc)

    navi = db.query(Navi).filter(Navi.id == navi_id).first()
    if not navi:
        raise NotFound()
    check_negotiation_preconditions(navi, caller_id, target_status)

    approving = target_status == NaviStatus.APPROVED

    try:
        current = (
            db.query(Navi)
            .filter(Navi.id == navi_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if not current:
            raise NotFound()

        buyer_id = resolve_buyer_user_id(current)
        check_navi_status_allows(current, target_status)
        if approving and not buyer_id:
            raise BuyerRequired()

        existing = db.query(Dealing).filter(Dealing.navi_id == current.id).first()
        if existing is not None:
            result = _replay_existing(db, current, existing, target_status, caller_id, user_directory, now)
            db.commit()
            return result

        listing = listing_store.get(db, current.listing_id)
        payload, listing_snapshot = build_normalized_payload(
            db, current, listing, buyer_id, listing_store, user_directory
        )

        previous_status = current.status
        current.status = target_status
        current.payload = payload
        current.listing_snapshot = listing_snapshot
        current.updated_at = now
        if buyer_id and not current.buyer_user_id:
            current.buyer_user_id = buyer_id
        db.flush()

        result = ApprovalResult(navi=current)

        if approving:
            dealing, created = create_dealing_once(db, current, buyer_id, _initial_dealing_status(), payload, now)
            if created:
                logger.info(
                    "Dealing %s created for navi %s (seller=%s buyer=%s status=%s)",
                    dealing.id, current.id, dealing.seller_user_id, dealing.buyer_user_id, dealing.status.value,
                )
            else:
                logger.info("Approval of navi %s collapsed onto existing dealing %s", current.id, dealing.id)

            if current.listing_id:
                _mark_listing_sold(db, listing_store, current.listing_id, current.id)

            record_ledger_for_status(
                db, dealing.status, dealing.status, dealing,
                actor_user_id=caller_id, occurred_at=now, user_directory=user_directory,
            )
            result = ApprovalResult(navi=current, dealing=dealing, created=created)

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Navi %s status %s -> %s by %s",
        navi_id, previous_status.value, target_status.value, caller_id,
    )
    return result


def _replay_existing(
    db: Session,
    navi: Navi,
    dealing: Dealing,
    target_status: NaviStatus,
    caller_id: str,
    user_directory: UserDirectory,
    now: datetime,
) -> ApprovalResult:
    """Handle a request against a Navi that already has its Dealing."""
    if target_status != NaviStatus.APPROVED:
        raise Conflict(f"Negotiation {navi.id} already has trade {dealing.id}")

    if navi.status != NaviStatus.APPROVED:
        # A Dealing only exists for an approved Navi; anything else means the
        # Navi was changed after the trade was created.
        logger.error(
            "Navi %s has dealing %s but status %s; refusing approval replay",
            navi.id, dealing.id, navi.status.value,
        )
        raise Conflict(f"Negotiation {navi.id} already has trade {dealing.id} but is {navi.status.value}")

    logger.info("Approval replay for navi %s returns existing dealing %s", navi.id, dealing.id)
    # Re-running the PLANNED posting is a no-op unless an earlier attempt lost it.
    record_ledger_for_status(
        db, dealing.status, dealing.status, dealing,
        actor_user_id=caller_id, occurred_at=now, user_directory=user_directory,
    )
    return ApprovalResult(navi=navi, dealing=dealing, created=False)
