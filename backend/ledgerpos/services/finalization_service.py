# Overview: Service-layer operations for bill finalization; one atomic unit for stock and the bill record.

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import BillLine, BillRecord, InventoryItem
from ..models.bills import BILL_STATUS_PAID, BILL_STATUSES
from ..models.movements import SOURCE_SALE
from ..money import ZERO, to_money
from ..time_utils import utcnow
from ..validation import ValidationError, parse_amount
from .actor import Actor
from .bill_service import DEFAULT_CUSTOMER_NAME, clean_customer_fields, compute_totals, derive_payment, validate_discount
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .document_service import next_bill_number
from .movement_service import AuditLogWriteFailure, new_movement, record_movements
from .stock_service import ItemNotFound, StockInsufficient, reserve_and_commit
"""
Finalization sequence (authoritative)

1. Inside one write transaction, read every selected item fresh and reject
   the whole bill with StockInsufficient if any line exceeds stock on hand.
2. Snapshot each line from the catalog (name, mrp, rate) and derive totals.
3. Apply every decrement through the stock ledger's conditional UPDATE and
   insert the BillRecord with its lines. Commit once.
4. After the commit, append one out/sale movement per line. A failure here is
   returned as AuditLogWriteFailure; the sale stays committed.
5. Clear the caller's draft.

Nothing before the commit point has any visible effect, so a failure there is
safe to retry. finalize_key makes the retry after a lost response safe too.
"""

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 1_000_000


@dataclass
class DraftLine:
    item_id: str
    name: str
    quantity: int


class BillDraft:
    """
    The bill being built at the counter.

    Quantities here are selections, not reservations: nothing is held until
    finalize_bill() re-reads stock inside its transaction.
    """

    def __init__(self):
        self._lines: dict[str, DraftLine] = {}

    @classmethod
    def from_payload(cls, items) -> "BillDraft":
        if not isinstance(items, list) or not items:
            raise ValidationError("items must be a non-empty list")
        draft = cls()
        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("each item must be an object")
            item_id = raw.get("item_id") or raw.get("id")
            if not isinstance(item_id, str) or not item_id.strip():
                raise ValidationError("item_id is required for every line")
            quantity = raw.get("quantity", raw.get("quantity_in_bill", 1))
            if isinstance(quantity, bool) or not isinstance(quantity, int):
                raise ValidationError("quantity must be an integer")
            if quantity <= 0:
                raise ValidationError("quantity must be > 0")
            draft.add_item(item_id.strip(), name=raw.get("name") or "", quantity=quantity)
        return draft

    def add_item(self, item_id: str, *, name: str = "", quantity: int = 1) -> DraftLine:
        line = self._lines.get(item_id)
        if line is None:
            line = DraftLine(item_id=item_id, name=name, quantity=0)
            self._lines[item_id] = line
        line.quantity = min(line.quantity + max(1, quantity), MAX_LINE_QUANTITY)
        return line

    def set_quantity(self, item_id: str, quantity: int) -> DraftLine:
        line = self._lines.get(item_id)
        if line is None:
            raise KeyError(item_id)
        line.quantity = min(max(1, int(quantity)), MAX_LINE_QUANTITY)
        return line

    def remove_item(self, item_id: str) -> None:
        self._lines.pop(item_id, None)

    def clear(self) -> None:
        self._lines.clear()

    @property
    def lines(self) -> list[DraftLine]:
        return list(self._lines.values())

    def __len__(self) -> int:
        return len(self._lines)


@dataclass(frozen=True)
class PaymentTerms:
    """How the customer is paying for a bill being finalized."""
    status: str
    amount_paid: Decimal = ZERO
    discount: Decimal = ZERO
    customer_name: str = DEFAULT_CUSTOMER_NAME
    customer_address: str | None = None
    remarks: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "PaymentTerms":
        status = payload.get("status")
        if status not in BILL_STATUSES:
            raise ValidationError("status must be 'paid' or 'debt'")
        customer = clean_customer_fields(payload)
        return cls(
            status=status,
            amount_paid=parse_amount(payload.get("amount_paid"), "amount_paid", default=ZERO),
            discount=parse_amount(payload.get("discount_amount"), "discount_amount", default=ZERO),
            customer_name=customer.get("customer_name") or DEFAULT_CUSTOMER_NAME,
            customer_address=customer.get("customer_address"),
            remarks=customer.get("remarks"),
        )


@dataclass
class FinalizationResult:
    bill: BillRecord
    audit_failure: AuditLogWriteFailure | None = None
    replayed: bool = False

    @property
    def warnings(self) -> list[dict]:
        return [self.audit_failure.to_dict()] if self.audit_failure else []


@dataclass(frozen=True)
class _LineSnapshot:
    item_id: str
    name: str
    mrp: Decimal
    rate: Decimal
    quantity: int


def _collected_amount(payment: PaymentTerms, grand_total: Decimal) -> Decimal:
    if payment.status == BILL_STATUS_PAID:
        return grand_total
    amount = to_money(payment.amount_paid)
    if amount < ZERO:
        raise ValidationError("amount_paid cannot be negative")
    if amount >= grand_total:
        raise ValidationError(
            "A debt bill must collect less than its grand total; finalize it as paid instead"
        )
    return amount


def _find_by_key(finalize_key: str) -> BillRecord | None:
    return db.session.query(BillRecord).filter_by(finalize_key=finalize_key).first()


def _check_replay(existing: BillRecord, lines: list[DraftLine]) -> None:
    billed = sorted((line.item_id, line.quantity_in_bill) for line in existing.lines)
    requested = sorted((line.item_id, line.quantity) for line in lines)
    if billed != requested:
        raise ValidationError(
            f"finalize_key was already used for bill {existing.id} with different items"
        )


def finalize_bill(
    draft: BillDraft,
    payment: PaymentTerms,
    actor: Actor,
    *,
    finalize_key: str | None = None,
) -> FinalizationResult:
    """
    Turn a draft into a committed bill, decrementing stock for every line.

    Raises StockInsufficient (nothing committed) when any line exceeds stock,
    ValidationError for bad payment terms, ConcurrencyConflict when retries
    against concurrent writers are exhausted.
    """
    lines = draft.lines
    if not lines:
        raise ValidationError("Bill has no items")
    if payment.status not in BILL_STATUSES:
        raise ValidationError("status must be 'paid' or 'debt'")

    def _op() -> tuple[BillRecord, bool, list[_LineSnapshot]]:
        begin_write_transaction()

        if finalize_key:
            existing = _find_by_key(finalize_key)
            if existing is not None:
                _check_replay(existing, lines)
                db.session.commit()
                return existing, True, []

        item_ids = [line.item_id for line in lines]
        items = {
            item.id: item
            for item in lock_for_update(
                db.session.query(InventoryItem)
                .filter(InventoryItem.id.in_(item_ids))
                .populate_existing()
            ).all()
        }

        snapshots: list[_LineSnapshot] = []
        for line in lines:
            item = items.get(line.item_id)
            if item is None:
                raise ItemNotFound(line.item_id)
            if item.stock - line.quantity < 0:
                raise StockInsufficient(item.id, item.name, line.quantity, item.stock)
            snapshots.append(
                _LineSnapshot(
                    item_id=item.id,
                    name=item.name,
                    mrp=to_money(item.mrp),
                    rate=to_money(item.rate),
                    quantity=line.quantity,
                )
            )

        sub_total = sum((s.mrp * s.quantity for s in snapshots), ZERO)
        discount = to_money(payment.discount)
        validate_discount(discount, sub_total)
        grand_total = compute_totals(sub_total, discount)
        state = derive_payment(grand_total, _collected_amount(payment, grand_total))

        now = utcnow()
        for snap in snapshots:
            # Conditional UPDATE; a writer that slipped in since the read above fails here
            reserve_and_commit(snap.item_id, -snap.quantity, now=now, commit=False)

        bill = BillRecord(
            id=next_bill_number(),
            created_at=now,
            sub_total=sub_total,
            discount_amount=discount,
            grand_total=state.grand_total,
            status=state.status,
            amount_actually_paid=state.amount_actually_paid,
            remaining_balance=state.remaining_balance,
            customer_name=payment.customer_name or DEFAULT_CUSTOMER_NAME,
            customer_address=payment.customer_address,
            remarks=payment.remarks,
            finalize_key=finalize_key,
            created_by_user_id=actor.user_id,
            created_by_user_name=actor.display_name,
        )
        for position, snap in enumerate(snapshots, start=1):
            bill.lines.append(
                BillLine(
                    position=position,
                    item_id=snap.item_id,
                    name=snap.name,
                    mrp=snap.mrp,
                    rate=snap.rate,
                    quantity_in_bill=snap.quantity,
                )
            )
        db.session.add(bill)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if finalize_key:
                existing = _find_by_key(finalize_key)
                if existing is not None:
                    _check_replay(existing, lines)
                    return existing, True, []
            raise
        return bill, False, snapshots

    bill, replayed, snapshots = run_with_retry(_op)

    if replayed:
        logger.info("finalize_key %s replayed; returning bill %s", finalize_key, bill.id)
        draft.clear()
        return FinalizationResult(bill=bill, replayed=True)

    logger.info(
        "bill %s finalized by %s: %d line(s), grand_total=%s status=%s",
        bill.id, actor.user_id, len(snapshots), bill.grand_total, bill.status,
    )

    movements = [
        new_movement(
            item_id=snap.item_id,
            item_name=snap.name,
            quantity_delta=-snap.quantity,
            source=SOURCE_SALE,
            actor=actor,
            reason=f"Sale - Bill ID: {bill.id}",
        )
        for snap in snapshots
    ]
    failure = None
    try:
        record_movements(movements, reference=f"bill {bill.id}")
    except AuditLogWriteFailure as exc:
        failure = exc

    draft.clear()
    return FinalizationResult(bill=bill, audit_failure=failure)
