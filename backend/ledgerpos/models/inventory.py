from __future__ import annotations

import uuid

from ..extensions import db
from ..time_utils import to_utc_z


def new_item_id() -> str:
    return uuid.uuid4().hex


class InventoryItem(db.Model):
    """
    Catalog item and its quantity on hand.

    OWNERSHIP: stock is owned by the stock service. Reporting code reads it,
    never writes it. Every stock write goes through a conditional UPDATE
    (see stock_service.reserve_and_commit) and bumps version_id, so two
    writers racing on the same row cannot both win.

    INVARIANT: stock >= 0 after every committed transaction. The CHECK
    constraint backs up the service-level guard.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_inventory_items_stock_nonneg"),
        db.Index("ix_inventory_items_name", "name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_item_id)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit = db.Column(db.String(32), nullable=True)  # strips, bottle, pcs
    batch_no = db.Column(db.String(64), nullable=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=0)

    # rate: unit cost; mrp: unit sale price
    rate = db.Column(db.Numeric(12, 2), nullable=False)
    mrp = db.Column(db.Numeric(12, 2), nullable=False)

    expiry_date = db.Column(db.Date, nullable=True)
    tags = db.Column(db.JSON, nullable=False, default=list)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_updated = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.low_stock_threshold

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} name={self.name!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "batch_no": self.batch_no,
            "stock": self.stock,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
            "rate": self.rate,
            "mrp": self.mrp,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "tags": list(self.tags or []),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "last_updated": to_utc_z(self.last_updated),
        }
