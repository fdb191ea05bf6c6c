# Overview: Service-layer operations for finalized bills; totals, payment derivation, edits and deletion.

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import BillEdit, BillLine, BillRecord
from ..models.bills import BILL_STATUS_DEBT, BILL_STATUS_PAID, BILL_STATUSES
from ..money import ZERO, clamp_zero, to_money
from ..time_utils import utcnow
from ..validation import ValidationError
from .actor import Actor
from .concurrency import ConcurrencyConflict, begin_write_transaction, run_with_retry
from .movement_service import PermissionDenied
"""
Bill invariants (authoritative)

- grand_total = max(0, sub_total - discount_amount)
- remaining_balance = max(0, grand_total - amount_actually_paid)
- status == "paid" iff remaining_balance == 0
- amount_actually_paid never exceeds grand_total.

All four are re-derived by derive_payment() on every write. Line items and
sub_total are immutable after finalization; edits touch customer fields,
discount and payment only.
"""

logger = logging.getLogger(__name__)

INTENT_KEEP = "KEEP"
INTENT_MARK_PAID = "MARK_PAID"
INTENT_ADD_PAYMENT = "ADD_PAYMENT"
INTENT_SET_STATUS = "SET_STATUS"

CUSTOMER_FIELDS = ("customer_name", "customer_address", "remarks")
CUSTOMER_FIELD_LIMITS = {"customer_name": 100, "customer_address": 200, "remarks": 500}
DEFAULT_CUSTOMER_NAME = "Walk-in Customer"


class BillNotFound(LookupError):
    def __init__(self, bill_id: str):
        super().__init__(f"Bill {bill_id} not found")
        self.bill_id = bill_id


@dataclass(frozen=True)
class PaymentState:
    grand_total: Decimal
    amount_actually_paid: Decimal
    remaining_balance: Decimal
    status: str


def compute_totals(sub_total, discount) -> Decimal:
    """grand_total for a subtotal and discount, floored at zero."""
    return clamp_zero(to_money(sub_total) - to_money(discount))


def derive_payment(grand_total, amount_paid) -> PaymentState:
    """Re-derive remaining balance and status from the amount paid."""
    grand_total = to_money(grand_total)
    paid = to_money(amount_paid)
    remaining = clamp_zero(grand_total - paid)
    status = BILL_STATUS_PAID if remaining == ZERO else BILL_STATUS_DEBT
    return PaymentState(
        grand_total=grand_total,
        amount_actually_paid=paid,
        remaining_balance=remaining,
        status=status,
    )


def validate_discount(discount: Decimal, sub_total: Decimal) -> None:
    if discount < ZERO:
        raise ValidationError("discount_amount cannot be negative")
    if discount > sub_total:
        raise ValidationError("discount_amount cannot exceed the bill subtotal")


def clean_customer_fields(payload: dict) -> dict:
    """Trim and length-check whichever customer fields are present."""
    cleaned: dict = {}
    for key in CUSTOMER_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if value is None:
            cleaned[key] = None
            continue
        if not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
        value = value.strip()
        if len(value) > CUSTOMER_FIELD_LIMITS[key]:
            raise ValidationError(f"{key} exceeds max length {CUSTOMER_FIELD_LIMITS[key]}")
        cleaned[key] = value or None
    if "customer_name" in cleaned and not cleaned["customer_name"]:
        cleaned["customer_name"] = DEFAULT_CUSTOMER_NAME
    return cleaned


def get_bill(bill_id: str) -> BillRecord:
    bill = db.session.get(BillRecord, bill_id)
    if bill is None:
        raise BillNotFound(bill_id)
    return bill


@dataclass(frozen=True)
class BillEditRequest:
    """
    A post-finalization correction.

    At most one payment intent may be expressed: paid_in_full, a positive
    payment_received_now, or a status different from the bill's current one.
    """
    edit_key: str
    customer: dict
    discount_amount: Decimal | None = None
    paid_in_full: bool = False
    payment_received_now: Decimal | None = None
    status: str | None = None
    expected_version: int | None = None


def resolve_intent(request: BillEditRequest, current_status: str) -> str:
    """
    Pick the single payment intent an edit expresses.

    paid_in_full with status "paid" is the same intent stated twice and
    collapses to MARK_PAID. Anything else that combines intents is rejected;
    an edit that expresses none keeps the amount already paid.
    """
    if request.status is not None and request.status not in BILL_STATUSES:
        raise ValidationError("status must be 'paid' or 'debt'")

    payment = request.payment_received_now or ZERO
    if request.paid_in_full and payment > ZERO:
        raise ValidationError("paid_in_full cannot be combined with payment_received_now")

    intents = []
    if request.paid_in_full:
        intents.append(INTENT_MARK_PAID)
    if payment > ZERO:
        intents.append(INTENT_ADD_PAYMENT)
    if request.status is not None and request.status != current_status:
        if not (request.paid_in_full and request.status == BILL_STATUS_PAID):
            intents.append(INTENT_SET_STATUS)

    if len(intents) > 1:
        raise ValidationError(
            "An edit may mark the bill paid, add a payment, or change its status, but only one of these"
        )
    return intents[0] if intents else INTENT_KEEP


def _paid_for_intent(intent: str, request: BillEditRequest, prior_paid: Decimal, grand_total: Decimal) -> Decimal:
    if intent == INTENT_MARK_PAID:
        return grand_total
    if intent == INTENT_ADD_PAYMENT:
        return min(prior_paid + request.payment_received_now, grand_total)
    if intent == INTENT_SET_STATUS:
        if request.status == BILL_STATUS_PAID:
            return grand_total
        if grand_total == ZERO:
            raise ValidationError("A bill with a zero grand total cannot be marked as debt")
        return ZERO
    return min(prior_paid, grand_total)


def edit_bill(bill_id: str, request: BillEditRequest, actor: Actor) -> BillRecord:
    """
    Apply a correction to a finalized bill in one transaction.

    A replayed edit_key returns the bill as it is without applying anything.
    expected_version, when given, must match the bill's current version_id.
    """
    if not request.edit_key:
        raise ValidationError("edit_key is required")

    def _op() -> BillRecord:
        begin_write_transaction()
        bill = get_bill(bill_id)

        replay = (
            db.session.query(BillEdit.id)
            .filter_by(bill_id=bill_id, edit_key=request.edit_key)
            .first()
        )
        if replay is not None:
            logger.info("bill %s edit %s already applied", bill_id, request.edit_key)
            db.session.commit()
            return bill

        if request.expected_version is not None and bill.version_id != request.expected_version:
            raise ConcurrencyConflict(
                "Bill was modified by another user; reload and retry",
                details={
                    "bill_id": bill_id,
                    "expected_version": request.expected_version,
                    "current_version": bill.version_id,
                },
            )

        intent = resolve_intent(request, bill.status)

        sub_total = to_money(bill.sub_total)
        discount = request.discount_amount if request.discount_amount is not None else to_money(bill.discount_amount)
        validate_discount(discount, sub_total)
        grand_total = compute_totals(sub_total, discount)

        prior_paid = to_money(bill.amount_actually_paid)
        paid = _paid_for_intent(intent, request, prior_paid, grand_total)
        state = derive_payment(grand_total, paid)

        status_before = bill.status
        for key, value in request.customer.items():
            setattr(bill, key, value)
        bill.discount_amount = discount
        bill.grand_total = state.grand_total
        bill.amount_actually_paid = state.amount_actually_paid
        bill.remaining_balance = state.remaining_balance
        bill.status = state.status
        bill.updated_at = utcnow()

        db.session.add(
            BillEdit(
                bill_id=bill_id,
                edit_key=request.edit_key,
                payment_intent=intent,
                payment_amount=request.payment_received_now if intent == INTENT_ADD_PAYMENT else None,
                discount_amount=discount,
                amount_paid_before=prior_paid,
                amount_paid_after=state.amount_actually_paid,
                status_before=status_before,
                status_after=state.status,
                edited_by_user_id=actor.user_id,
                edited_by_user_name=actor.display_name,
                applied_at=bill.updated_at,
            )
        )
        try:
            db.session.commit()
        except IntegrityError:
            # Same edit_key committed by a concurrent request
            db.session.rollback()
            return get_bill(bill_id)

        logger.info(
            "bill %s edited by %s: intent=%s paid %s -> %s status %s -> %s",
            bill_id, actor.user_id, intent, prior_paid, state.amount_actually_paid, status_before, state.status,
        )
        return bill

    return run_with_retry(_op)


def list_bill_edits(bill_id: str) -> list[BillEdit]:
    get_bill(bill_id)
    return (
        db.session.query(BillEdit)
        .filter_by(bill_id=bill_id)
        .order_by(BillEdit.applied_at.asc(), BillEdit.id.asc())
        .all()
    )


def batch_delete_bills(bill_ids: list[str], actor: Actor, *, chunk_size: int | None = None) -> dict:
    """
    Permanently delete bills in bounded chunks; admin only.

    Stock sold on these bills is not restored and their movement events stay
    in the log. Each chunk commits on its own; ids that no longer exist are
    reported as missing rather than failing the batch.
    """
    if not actor.is_admin:
        raise PermissionDenied("deleting bills requires the admin role")
    if not isinstance(bill_ids, list) or not all(isinstance(b, str) and b for b in bill_ids):
        raise ValidationError("bill_ids must be a list of bill ids")

    if chunk_size is None:
        chunk_size = current_app.config.get("BILL_DELETE_CHUNK_SIZE", 500)

    unique_ids = list(dict.fromkeys(bill_ids))
    deleted = 0
    chunks = 0
    for start in range(0, len(unique_ids), chunk_size):
        chunk = unique_ids[start:start + chunk_size]

        def _op(chunk=chunk) -> int:
            begin_write_transaction()
            db.session.execute(
                delete(BillLine).where(BillLine.bill_id.in_(chunk)).execution_options(synchronize_session=False)
            )
            db.session.execute(
                delete(BillEdit).where(BillEdit.bill_id.in_(chunk)).execution_options(synchronize_session=False)
            )
            count = db.session.execute(
                delete(BillRecord).where(BillRecord.id.in_(chunk)).execution_options(synchronize_session=False)
            ).rowcount
            db.session.commit()
            return count

        deleted += run_with_retry(_op)
        chunks += 1

    db.session.expire_all()
    logger.warning("%d bill(s) deleted by %s in %d chunk(s)", deleted, actor.user_id, chunks)
    return {
        "requested": len(unique_ids),
        "deleted": deleted,
        "missing": len(unique_ids) - deleted,
        "chunks": chunks,
    }
