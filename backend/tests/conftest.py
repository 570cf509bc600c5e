import os
import sys
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models_sqlalchemy import Base, enable_sqlite_savepoints
from app.models_sqlalchemy.models import (
    Dealing,
    DealingStatus,
    Listing,
    ListingStatus,
    Navi,
    NaviStatus,
    NaviType,
    User,
)

NOW = datetime(2026, 10, 18, 9, 30, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    """u1 sells, u2 buys, u3 has nothing to do with the trade."""
    rows = [
        User(id="u1", email="seller@example.com", company_name="Arcade Seller Co."),
        User(id="u2", email="buyer@example.com", company_name="Game Center Buyer"),
        User(id="u3", email="outsider@example.com", company_name="Someone Else"),
    ]
    db.add_all(rows)
    db.commit()
    return {u.id: u for u in rows}


@pytest.fixture
def listing(db, users):
    row = Listing(
        id="listing-1",
        seller_user_id="u1",
        status=ListingStatus.PUBLISHED,
        title="Street Fighter II cabinet",
        maker="Capcom",
        machine_name="Street Fighter II",
        unit_price_excl_tax=100000,
        quantity=1,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def make_navi(db, users):
    def _make(
        status=NaviStatus.SENT,
        buyer_user_id=None,
        payload=None,
        listing_id=None,
        navi_type=NaviType.PHONE_AGREEMENT,
        owner_user_id="u1",
    ):
        navi = Navi(
            owner_user_id=owner_user_id,
            buyer_user_id=buyer_user_id,
            navi_type=navi_type,
            status=status,
            listing_id=listing_id,
            payload=payload if payload is not None else {"buyerId": "u2", "address": "1-2-3 Akihabara, Tokyo", "personName": "Sato"},
        )
        db.add(navi)
        db.commit()
        return navi

    return _make


@pytest.fixture
def make_dealing(db, make_navi):
    def _make(status=DealingStatus.PAYMENT_REQUIRED, payload=None, navi=None, **columns):
        navi = navi or make_navi(status=NaviStatus.APPROVED, buyer_user_id="u2")
        dealing = Dealing(
            seller_user_id=navi.owner_user_id,
            buyer_user_id="u2",
            status=status,
            payload=payload if payload is not None else {
                "conditions": {"unitPrice": 200000, "quantity": 1, "taxRate": 0.1, "productName": "Taiko no Tatsujin"},
            },
            navi_id=navi.id,
            **columns,
        )
        db.add(dealing)
        db.commit()
        return dealing

    return _make
