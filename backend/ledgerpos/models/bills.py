from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

BILL_STATUS_PAID = "paid"
BILL_STATUS_DEBT = "debt"
BILL_STATUSES = (BILL_STATUS_PAID, BILL_STATUS_DEBT)


class BillRecord(db.Model):
    """
    Finalized sale.

    The id is allocated from the BILL document sequence and is the bill number
    printed on the receipt.

    INVARIANTS (re-derived together on every write, see bill_service.derive_payment):
    - grand_total = max(0, sub_total - discount_amount)
    - remaining_balance = max(0, grand_total - amount_actually_paid)
    - status == "paid" iff remaining_balance == 0

    Lines are snapshots (name, mrp, rate at time of sale). Later catalog edits
    never change a finalized bill.
    """
    __tablename__ = "bill_records"
    __table_args__ = (
        db.CheckConstraint("status IN ('paid', 'debt')", name="ck_bill_records_status"),
        db.CheckConstraint("remaining_balance >= 0", name="ck_bill_records_remaining_nonneg"),
        # History paging: ORDER BY created_at DESC, id DESC with status equality filter
        db.Index("ix_bill_records_created", "created_at", "id"),
        db.Index("ix_bill_records_status_created", "status", "created_at", "id"),
    )

    id = db.Column(db.String(32), primary_key=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    sub_total = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    grand_total = db.Column(db.Numeric(12, 2), nullable=False)

    status = db.Column(db.String(8), nullable=False)
    amount_actually_paid = db.Column(db.Numeric(12, 2), nullable=False)
    remaining_balance = db.Column(db.Numeric(12, 2), nullable=False)

    customer_name = db.Column(db.String(100), nullable=False)
    customer_address = db.Column(db.String(200), nullable=True)
    remarks = db.Column(db.String(500), nullable=True)

    # Client-supplied key making finalization safe to retry
    finalize_key = db.Column(db.String(64), nullable=True, unique=True)

    created_by_user_id = db.Column(db.String(128), nullable=True)
    created_by_user_name = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship(
        "BillLine",
        backref="bill",
        order_by="BillLine.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<BillRecord id={self.id} status={self.status} grand_total={self.grand_total}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bill_number": self.id,
            "date": to_utc_z(self.created_at),
            "items": [line.to_dict() for line in self.lines],
            "sub_total": self.sub_total,
            "discount_amount": self.discount_amount,
            "grand_total": self.grand_total,
            "status": self.status,
            "amount_actually_paid": self.amount_actually_paid,
            "remaining_balance": self.remaining_balance,
            "customer_name": self.customer_name,
            "customer_address": self.customer_address,
            "remarks": self.remarks,
            "created_by_user_id": self.created_by_user_id,
            "created_by_user_name": self.created_by_user_name,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
        }


class BillLine(db.Model):
    """Snapshot of one sold item. Immutable once the bill is finalized."""
    __tablename__ = "bill_lines"
    __table_args__ = (
        db.UniqueConstraint("bill_id", "position", name="uq_bill_lines_bill_position"),
        db.CheckConstraint("quantity_in_bill > 0", name="ck_bill_lines_quantity_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bill_id = db.Column(db.String(32), db.ForeignKey("bill_records.id", ondelete="CASCADE"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    # Lookup relation only: the item may later be edited or removed
    item_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    mrp = db.Column(db.Numeric(12, 2), nullable=False)
    rate = db.Column(db.Numeric(12, 2), nullable=False)
    quantity_in_bill = db.Column(db.Integer, nullable=False)

    @property
    def line_total(self):
        return self.mrp * self.quantity_in_bill

    def to_dict(self) -> dict:
        return {
            "id": self.item_id,
            "name": self.name,
            "mrp": self.mrp,
            "rate": self.rate,
            "quantity_in_bill": self.quantity_in_bill,
            "line_total": self.line_total,
        }


class BillEdit(db.Model):
    """
    Applied post-finalization correction.

    (bill_id, edit_key) is unique: a replayed edit finds its row here and is
    not applied a second time.
    """
    __tablename__ = "bill_edits"
    __table_args__ = (
        db.UniqueConstraint("bill_id", "edit_key", name="uq_bill_edits_bill_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bill_id = db.Column(db.String(32), db.ForeignKey("bill_records.id", ondelete="CASCADE"), nullable=False, index=True)
    edit_key = db.Column(db.String(64), nullable=False)

    payment_intent = db.Column(db.String(16), nullable=False)
    payment_amount = db.Column(db.Numeric(12, 2), nullable=True)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)

    amount_paid_before = db.Column(db.Numeric(12, 2), nullable=False)
    amount_paid_after = db.Column(db.Numeric(12, 2), nullable=False)
    status_before = db.Column(db.String(8), nullable=False)
    status_after = db.Column(db.String(8), nullable=False)

    edited_by_user_id = db.Column(db.String(128), nullable=True)
    edited_by_user_name = db.Column(db.String(255), nullable=True)
    applied_at = db.Column(db.DateTime(timezone=True), nullable=False)

    bill = db.relationship(
        "BillRecord",
        backref=db.backref("edits", lazy=True, cascade="all, delete-orphan"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bill_id": self.bill_id,
            "edit_key": self.edit_key,
            "payment_intent": self.payment_intent,
            "payment_amount": self.payment_amount,
            "discount_amount": self.discount_amount,
            "amount_paid_before": self.amount_paid_before,
            "amount_paid_after": self.amount_paid_after,
            "status_before": self.status_before,
            "status_after": self.status_after,
            "edited_by_user_id": self.edited_by_user_id,
            "edited_by_user_name": self.edited_by_user_name,
            "applied_at": to_utc_z(self.applied_at),
        }
