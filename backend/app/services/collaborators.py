"""Narrow interfaces to the services that surround the trade core.

Only the SQL-backed defaults live here; the listing marketplace and the user
directory own their data and may be swapped out in tests.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import Listing, ListingStatus, User
from app.utils.logger import logger


class UserDirectory:
    """Resolve user ids to display names. Missing users yield None."""

    def company_name(self, db: Session, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            logger.debug("User %s not found in directory", user_id)
            return None
        return user.company_name or None


class ListingStore:
    def get(self, db: Session, listing_id: Optional[str]) -> Optional[Listing]:
        if not listing_id:
            return None
        return db.query(Listing).filter(Listing.id == listing_id).first()

    def build_snapshot(self, listing: Listing) -> Dict[str, Any]:
        """Immutable copy of the listing terms a Navi was negotiated against."""
        return {
            "listingId": listing.id,
            "title": listing.title or listing.machine_name or "",
            "description": listing.description,
            "maker": listing.maker,
            "machineName": listing.machine_name,
            "unitPriceExclTax": listing.unit_price_excl_tax,
            "quantity": listing.quantity or 1,
            "createdAt": (listing.created_at or datetime.utcnow()).isoformat(),
        }

    def mark_sold(self, db: Session, listing_id: str) -> bool:
        """Flip the listing to SOLD. Returns False when there was nothing to change."""
        listing = self.get(db, listing_id)
        if not listing or listing.status == ListingStatus.SOLD:
            return False
        listing.status = ListingStatus.SOLD
        db.flush()
        return True


default_user_directory = UserDirectory()
default_listing_store = ListingStore()
