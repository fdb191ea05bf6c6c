from decimal import Decimal

import pytest

from ledgerpos.extensions import db
from ledgerpos.models import InventoryItem, MovementEvent
from ledgerpos.services import stock_service
from ledgerpos.services.concurrency import ConcurrencyConflict
from ledgerpos.services.stock_service import ItemNotFound, StockInsufficient


def _stock(item_id):
    return db.session.query(InventoryItem.stock).filter_by(id=item_id).scalar()


def test_reserve_and_commit_decrements_and_bumps_version(db_session, make_item):
    item = make_item(stock=10)
    version = item.version_id

    new_stock = stock_service.reserve_and_commit(item.id, -4)

    assert new_stock == 6
    refreshed = db_session.get(InventoryItem, item.id)
    assert refreshed.stock == 6
    assert refreshed.version_id == version + 1


def test_reserve_and_commit_rejects_oversell_without_mutation(db_session, make_item):
    item = make_item(stock=3)

    with pytest.raises(StockInsufficient) as exc:
        stock_service.reserve_and_commit(item.id, -4)

    assert exc.value.details["on_hand"] == 3
    assert exc.value.details["requested_quantity"] == 4
    assert _stock(item.id) == 3


def test_reserve_and_commit_allows_selling_last_unit(db_session, make_item):
    item = make_item(stock=1)
    assert stock_service.reserve_and_commit(item.id, -1) == 0


def test_reserve_and_commit_ignores_stale_cached_quantity(db_session, make_item):
    item = make_item(stock=5)
    # Another writer drains the stock behind this session's back
    db_session.execute(
        InventoryItem.__table__.update().where(InventoryItem.id == item.id).values(stock=1)
    )
    db_session.commit()

    with pytest.raises(StockInsufficient):
        stock_service.reserve_and_commit(item.id, -2)
    assert _stock(item.id) == 1


def test_loaded_item_sees_uncommitted_decrement(db_session, make_item):
    item = make_item(stock=10)
    loaded = db_session.get(InventoryItem, item.id)
    assert loaded.stock == 10

    assert stock_service.reserve_and_commit(item.id, -3, commit=False) == 7
    # The Core UPDATE bypasses the ORM; the cached instance must be expired
    assert loaded.stock == 7

    db_session.rollback()
    assert _stock(item.id) == 10


def test_reserve_and_commit_unknown_item(db_session):
    with pytest.raises(ItemNotFound):
        stock_service.reserve_and_commit("missing", -1)


def test_create_item_records_initial_stock_movement(db_session, staff):
    result = stock_service.create_item(
        {"name": "Cough Syrup", "stock": 12, "rate": Decimal("40.00"), "mrp": Decimal("55.00")},
        staff,
    )

    assert result.audit_failure is None
    events = db_session.query(MovementEvent).filter_by(item_id=result.item.id).all()
    assert len(events) == 1
    assert events[0].type == "in"
    assert events[0].source == "initial_stock"
    assert events[0].quantity == 12
    assert events[0].moved_by_user_id == "u-staff"


def test_create_item_with_zero_stock_records_no_movement(db_session, staff):
    result = stock_service.create_item(
        {"name": "Bandage", "stock": 0, "rate": Decimal("1.00"), "mrp": Decimal("2.00")},
        staff,
    )
    assert db_session.query(MovementEvent).filter_by(item_id=result.item.id).count() == 0


def test_update_item_stock_is_absolute_and_logs_net_change(db_session, make_item, staff):
    item = make_item(stock=10)

    result = stock_service.update_item(item.id, {"stock": 7, "name": "Paracetamol 650mg"}, staff)

    assert result.item.stock == 7
    assert result.item.name == "Paracetamol 650mg"
    events = db_session.query(MovementEvent).filter_by(item_id=item.id).all()
    assert [(e.type, e.quantity, e.source) for e in events] == [("out", 3, "stock_edit")]


def test_update_item_without_stock_change_logs_nothing(db_session, make_item, staff):
    item = make_item(stock=10)
    stock_service.update_item(item.id, {"stock": 10, "low_stock_threshold": 5}, staff)
    assert db_session.query(MovementEvent).count() == 0
    assert db_session.get(InventoryItem, item.id).low_stock_threshold == 5


def test_update_item_rejects_stale_version(db_session, make_item, staff):
    item = make_item(stock=10)
    loaded_version = item.version_id
    stock_service.reserve_and_commit(item.id, -1)

    with pytest.raises(ConcurrencyConflict):
        stock_service.update_item(item.id, {"stock": 20}, staff, expected_version=loaded_version)
    assert _stock(item.id) == 9


def test_adjust_stock_in_and_out(db_session, make_item, staff):
    item = make_item(stock=2)

    stock_service.adjust_stock(item.id, direction="in", quantity=5, actor=staff, reason="Supplier delivery")
    result = stock_service.adjust_stock(item.id, direction="out", quantity=3, actor=staff, reason="Expired")

    assert result.item.stock == 4
    events = db_session.query(MovementEvent).order_by(MovementEvent.id).all()
    assert [(e.type, e.quantity, e.reason) for e in events] == [
        ("in", 5, "Supplier delivery"),
        ("out", 3, "Expired"),
    ]


def test_adjust_stock_out_cannot_go_negative(db_session, make_item, staff):
    item = make_item(stock=2)
    with pytest.raises(StockInsufficient):
        stock_service.adjust_stock(item.id, direction="out", quantity=3, actor=staff)
    assert _stock(item.id) == 2
    assert db_session.query(MovementEvent).count() == 0


def test_list_items_search_and_low_stock(db_session, make_item):
    make_item(name="Amoxicillin", stock=1, low_stock_threshold=5)
    make_item(name="Ibuprofen", stock=50, low_stock_threshold=5)

    assert [i.name for i in stock_service.list_items(search="amox")] == ["Amoxicillin"]
    assert [i.name for i in stock_service.list_items(low_stock_only=True)] == ["Amoxicillin"]
    assert len(stock_service.list_items()) == 2
