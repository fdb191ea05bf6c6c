from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"
MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT)

SOURCE_SALE = "sale"
SOURCE_STOCK_EDIT = "stock_edit"
SOURCE_INITIAL_STOCK = "initial_stock"
SOURCE_CSV_IMPORT = "csv_import"
MOVEMENT_SOURCES = (SOURCE_SALE, SOURCE_STOCK_EDIT, SOURCE_INITIAL_STOCK, SOURCE_CSV_IMPORT)


class DailyMovementLog(db.Model):
    """
    One bucket per calendar day (id = "YYYY-MM-DD").

    WHY: writers on the same day contend only with each other, never with
    earlier days, and no single unbounded "all movements" table gets scanned
    to show recent history.

    Counters are bumped with UPDATE ... SET x = x + n in the same transaction
    as the event insert. There is no read-modify-write of the bucket.
    """
    __tablename__ = "daily_movement_logs"

    id = db.Column(db.String(10), primary_key=True)
    date = db.Column(db.Date, nullable=False, unique=True)

    event_count = db.Column(db.Integer, nullable=False, default=0)
    total_in = db.Column(db.Integer, nullable=False, default=0)
    total_out = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_updated = db.Column(db.DateTime(timezone=True), nullable=False)

    movements = db.relationship(
        "MovementEvent",
        backref="daily_log",
        order_by="MovementEvent.id",
        lazy="select",
    )

    def to_dict(self, movements=None) -> dict:
        if movements is None:
            movements = self.movements
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "event_count": self.event_count,
            "total_in": self.total_in,
            "total_out": self.total_out,
            "last_updated": to_utc_z(self.last_updated),
            "movements": [m.to_dict() for m in movements],
        }


class MovementEvent(db.Model):
    """Append-only stock movement. Never updated; only bulk-cleared with its bucket."""
    __tablename__ = "movement_events"
    __table_args__ = (
        db.UniqueConstraint("daily_log_id", "event_id", name="uq_movement_events_day_event"),
        db.CheckConstraint("quantity > 0", name="ck_movement_events_quantity_pos"),
        db.CheckConstraint("type IN ('in', 'out')", name="ck_movement_events_type"),
        db.Index("ix_movement_events_item_day", "item_id", "daily_log_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    daily_log_id = db.Column(db.String(10), db.ForeignKey("daily_movement_logs.id"), nullable=False, index=True)
    event_id = db.Column(db.String(40), nullable=False)

    item_id = db.Column(db.String(36), nullable=False)
    item_name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(3), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    movement_date = db.Column(db.Date, nullable=False)
    source = db.Column(db.String(16), nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=True)

    moved_by_user_id = db.Column(db.String(128), nullable=False)
    moved_by_user_name = db.Column(db.String(255), nullable=False)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "type": self.type,
            "quantity": self.quantity,
            "movement_date": self.movement_date.isoformat(),
            "source": self.source,
            "reason": self.reason,
            "moved_by_user_id": self.moved_by_user_id,
            "moved_by_user_name": self.moved_by_user_name,
            "recorded_at": to_utc_z(self.recorded_at),
        }
