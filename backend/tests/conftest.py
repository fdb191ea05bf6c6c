"""
Pytest fixtures for ledgerpos backend tests.

Provides the application on an in-memory database, a per-test table wipe,
acting users, and factories for items and bills.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from ledgerpos import create_app
from ledgerpos.extensions import db
from ledgerpos.models import BillLine, BillRecord, InventoryItem
from ledgerpos.services.actor import Actor, ROLE_ADMIN, ROLE_STAFF
from ledgerpos.services.bill_service import derive_payment


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'AUDIT_APPEND_ATTEMPTS': 1,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture
def staff():
    return Actor(user_id="u-staff", display_name="Counter Staff", role=ROLE_STAFF)


@pytest.fixture
def admin():
    return Actor(user_id="u-admin", display_name="Store Admin", role=ROLE_ADMIN)


@pytest.fixture
def staff_headers():
    return {"X-Actor-Id": "u-staff", "X-Actor-Name": "Counter Staff", "X-Actor-Role": "staff"}


@pytest.fixture
def admin_headers():
    return {"X-Actor-Id": "u-admin", "X-Actor-Name": "Store Admin", "X-Actor-Role": "admin"}


@pytest.fixture
def make_item(db_session):
    """Insert an item directly, bypassing the movement log."""
    def _make(name="Paracetamol 500mg", stock=10, rate="4.00", mrp="5.00", **extra):
        now = datetime(2026, 1, 1, 9, 0, 0)
        item = InventoryItem(
            name=name,
            stock=stock,
            low_stock_threshold=extra.pop("low_stock_threshold", 2),
            rate=Decimal(rate),
            mrp=Decimal(mrp),
            tags=extra.pop("tags", []),
            created_at=now,
            last_updated=now,
            **extra,
        )
        db_session.add(item)
        db_session.commit()
        return item
    return _make


@pytest.fixture
def make_bill(db_session):
    """Insert a finalized bill directly with a chosen creation time."""
    counter = {"n": 0}

    def _make(created_at, *, customer_name="Walk-in Customer", status="paid",
              sub_total="100.00", discount="0.00", paid=None, bill_id=None):
        counter["n"] += 1
        sub = Decimal(sub_total)
        grand = max(sub - Decimal(discount), Decimal("0.00"))
        if paid is None:
            paid = grand if status == "paid" else Decimal("0.00")
        state = derive_payment(grand, paid)
        bill = BillRecord(
            id=bill_id or f"B-{counter['n']:06d}",
            created_at=created_at,
            sub_total=sub,
            discount_amount=Decimal(discount),
            grand_total=state.grand_total,
            status=state.status,
            amount_actually_paid=state.amount_actually_paid,
            remaining_balance=state.remaining_balance,
            customer_name=customer_name,
        )
        bill.lines.append(
            BillLine(position=1, item_id="seed-item", name="Seed", mrp=sub, rate=sub, quantity_in_bill=1)
        )
        db_session.add(bill)
        db_session.commit()
        return bill
    return _make
