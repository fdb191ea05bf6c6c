from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from ledgerpos.extensions import db
from ledgerpos.models import BillRecord, DailyMovementLog, InventoryItem, MovementEvent
from ledgerpos.services import movement_service
from ledgerpos.services.finalization_service import BillDraft, PaymentTerms, finalize_bill
from ledgerpos.services.stock_service import StockInsufficient
from ledgerpos.validation import ValidationError


def _stock(item_id):
    return db.session.query(InventoryItem.stock).filter_by(id=item_id).scalar()


def _draft(*lines):
    draft = BillDraft()
    for item, qty in lines:
        draft.add_item(item.id, name=item.name, quantity=qty)
    return draft


def test_finalize_paid_bill_decrements_stock_and_logs_sales(db_session, make_item, staff):
    a = make_item(name="Item A", stock=10, rate="3.00", mrp="5.00")
    b = make_item(name="Item B", stock=4, rate="8.00", mrp="12.50")
    draft = _draft((a, 2), (b, 1))

    result = finalize_bill(draft, PaymentTerms(status="paid"), staff)

    bill = result.bill
    assert result.replayed is False
    assert result.audit_failure is None
    assert bill.id == "B-000001"
    assert bill.sub_total == Decimal("22.50")
    assert bill.grand_total == Decimal("22.50")
    assert bill.amount_actually_paid == Decimal("22.50")
    assert bill.remaining_balance == Decimal("0.00")
    assert bill.status == "paid"
    assert bill.customer_name == "Walk-in Customer"
    assert [(l.name, l.quantity_in_bill) for l in bill.lines] == [("Item A", 2), ("Item B", 1)]

    assert _stock(a.id) == 8
    assert _stock(b.id) == 3

    events = db_session.query(MovementEvent).order_by(MovementEvent.id).all()
    assert [(e.item_id, e.type, e.quantity, e.source) for e in events] == [
        (a.id, "out", 2, "sale"),
        (b.id, "out", 1, "sale"),
    ]
    assert all(e.reason == f"Sale - Bill ID: {bill.id}" for e in events)
    bucket = db_session.get(DailyMovementLog, events[0].daily_log_id)
    assert bucket.event_count == 2
    assert bucket.total_out == 3

    assert len(draft) == 0


def test_finalize_snapshots_prices_from_catalog(db_session, make_item, staff):
    item = make_item(stock=5, rate="4.00", mrp="5.00")
    result = finalize_bill(_draft((item, 1)), PaymentTerms(status="paid"), staff)

    item = db_session.get(InventoryItem, item.id)
    item.mrp = Decimal("9.00")
    db_session.commit()

    bill = db_session.get(BillRecord, result.bill.id)
    assert bill.lines[0].mrp == Decimal("5.00")
    assert bill.sub_total == Decimal("5.00")


def test_debt_bill_with_discount(db_session, make_item, staff):
    item = make_item(stock=10, rate="80.00", mrp="100.00")
    terms = PaymentTerms(status="debt", amount_paid=Decimal("200"), discount=Decimal("50"), customer_name="Ravi")

    bill = finalize_bill(_draft((item, 5)), terms, staff).bill

    assert bill.sub_total == Decimal("500.00")
    assert bill.grand_total == Decimal("450.00")
    assert bill.amount_actually_paid == Decimal("200.00")
    assert bill.remaining_balance == Decimal("250.00")
    assert bill.status == "debt"


def test_oversell_aborts_whole_bill(db_session, make_item, staff):
    a = make_item(name="Item A", stock=10)
    b = make_item(name="Item B", stock=1)
    draft = _draft((a, 3), (b, 2))

    with pytest.raises(StockInsufficient) as exc:
        finalize_bill(draft, PaymentTerms(status="paid"), staff)

    assert exc.value.details["item_name"] == "Item B"
    assert _stock(a.id) == 10
    assert _stock(b.id) == 1
    assert db_session.query(BillRecord).count() == 0
    assert db_session.query(MovementEvent).count() == 0
    # The draft survives a failed finalization
    assert len(draft) == 2


def test_debt_payment_at_or_above_grand_total_is_rejected(db_session, make_item, staff):
    item = make_item(stock=10, mrp="10.00", rate="5.00")

    with pytest.raises(ValidationError):
        finalize_bill(_draft((item, 1)), PaymentTerms(status="debt", amount_paid=Decimal("10.00")), staff)

    assert _stock(item.id) == 10
    assert db_session.query(BillRecord).count() == 0


def test_discount_above_subtotal_is_rejected(db_session, make_item, staff):
    item = make_item(stock=10, mrp="10.00", rate="5.00")
    with pytest.raises(ValidationError):
        finalize_bill(_draft((item, 1)), PaymentTerms(status="paid", discount=Decimal("10.01")), staff)
    assert _stock(item.id) == 10


def test_empty_draft_is_rejected(db_session, staff):
    with pytest.raises(ValidationError):
        finalize_bill(BillDraft(), PaymentTerms(status="paid"), staff)


def test_finalize_key_replay_does_not_double_decrement(db_session, make_item, staff):
    item = make_item(stock=10)

    first = finalize_bill(_draft((item, 3)), PaymentTerms(status="paid"), staff, finalize_key="k-1")
    second = finalize_bill(_draft((item, 3)), PaymentTerms(status="paid"), staff, finalize_key="k-1")

    assert second.replayed is True
    assert second.bill.id == first.bill.id
    assert _stock(item.id) == 7
    assert db_session.query(BillRecord).count() == 1
    assert db_session.query(MovementEvent).count() == 1


def test_finalize_key_reused_for_a_different_basket_is_rejected(db_session, make_item, staff):
    item = make_item(stock=10)
    other = make_item(name="Cetirizine 10mg", stock=10)
    finalize_bill(_draft((item, 3)), PaymentTerms(status="paid"), staff, finalize_key="k-1")

    with pytest.raises(ValidationError):
        finalize_bill(_draft((item, 4)), PaymentTerms(status="paid"), staff, finalize_key="k-1")
    with pytest.raises(ValidationError):
        finalize_bill(_draft((item, 3), (other, 1)), PaymentTerms(status="paid"), staff, finalize_key="k-1")

    assert _stock(item.id) == 7
    assert _stock(other.id) == 10
    assert db_session.query(BillRecord).count() == 1


def test_audit_failure_keeps_sale_committed(db_session, make_item, staff, monkeypatch):
    item = make_item(stock=10)

    def broken_append(daily_key, event, *, attempts=3):
        raise OperationalError("INSERT INTO movement_events", {}, Exception("disk I/O error"))

    monkeypatch.setattr(movement_service, "append_movement", broken_append)
    draft = _draft((item, 4))

    result = finalize_bill(draft, PaymentTerms(status="paid"), staff)

    assert result.audit_failure is not None
    assert len(result.audit_failure.failed_events) == 1
    assert result.warnings[0]["type"] == "audit_log_write_failure"
    # Stock and bill are exactly what a clean finalization leaves behind
    assert _stock(item.id) == 6
    bill = db_session.get(BillRecord, result.bill.id)
    assert bill.status == "paid"
    assert bill.grand_total == Decimal("20.00")
    assert db_session.query(MovementEvent).count() == 0
    assert len(draft) == 0


def test_bill_numbers_are_sequential(db_session, make_item, staff):
    item = make_item(stock=10)
    ids = [
        finalize_bill(_draft((item, 1)), PaymentTerms(status="paid"), staff).bill.id
        for _ in range(3)
    ]
    assert ids == ["B-000001", "B-000002", "B-000003"]


def test_draft_quantity_rules():
    draft = BillDraft()
    draft.add_item("a", name="A")
    draft.add_item("a", name="A", quantity=2)
    assert draft.lines[0].quantity == 3

    draft.set_quantity("a", 0)
    assert draft.lines[0].quantity == 1

    draft.add_item("b", name="B")
    draft.remove_item("a")
    assert [l.item_id for l in draft.lines] == ["b"]

    draft.clear()
    assert draft.lines == []
