# Overview: Service-layer operations for the stock ledger; the only writer of InventoryItem.stock.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import or_, update
from sqlalchemy.orm.util import identity_key

from ..extensions import db
from ..models import InventoryItem
from ..models.movements import SOURCE_INITIAL_STOCK, SOURCE_STOCK_EDIT
from ..time_utils import utcnow
from ..validation import ConflictError, ValidationError
from .actor import Actor
from .concurrency import ConcurrencyConflict, begin_write_transaction, lock_for_update, run_with_retry
from .movement_service import AuditLogWriteFailure, NewMovement, new_movement, record_movements
"""
Stock ledger invariants (authoritative)

- InventoryItem.stock is never negative after a commit.
- Every stock write is a conditional UPDATE:
      SET stock = stock + :delta, version_id = version_id + 1
      WHERE id = :id AND stock >= :needed
  so the check and the write are one statement. A quantity read earlier by a
  client, or earlier in this transaction, is never trusted at commit time.
- Stock edits and imports are absolute sets; the movement log records the net
  signed change only.
"""

logger = logging.getLogger(__name__)

ITEM_MUTABLE_FIELDS = {
    "name", "description", "unit", "batch_no", "stock", "low_stock_threshold",
    "rate", "mrp", "expiry_date", "tags",
}


class ItemNotFound(LookupError):
    """Raised when an inventory item id does not exist."""

    def __init__(self, item_id: str):
        super().__init__(f"Inventory item {item_id} not found")
        self.item_id = item_id


class StockInsufficient(ConflictError):
    """A line asks for more units than are on hand at commit time."""

    def __init__(self, item_id: str, item_name: str | None, requested: int, on_hand: int):
        super().__init__(
            f"Not enough stock for {item_name or item_id}: requested {requested}, on hand {on_hand}",
            details={
                "item_id": item_id,
                "item_name": item_name,
                "requested_quantity": requested,
                "on_hand": on_hand,
            },
        )
        self.item_id = item_id
        self.requested = requested
        self.on_hand = on_hand


@dataclass
class StockWriteResult:
    """A committed stock write plus any audit-log gap it left behind."""
    item: InventoryItem
    audit_failure: AuditLogWriteFailure | None = None

    @property
    def warnings(self) -> list[dict]:
        return [self.audit_failure.to_dict()] if self.audit_failure else []


def _expire_cached_item(item_id: str) -> None:
    cached = db.session.identity_map.get(identity_key(InventoryItem, item_id))
    if cached is not None:
        db.session.expire(cached)


def get_item(item_id: str, *, lock: bool = False) -> InventoryItem:
    query = db.session.query(InventoryItem).filter_by(id=item_id)
    if lock:
        query = lock_for_update(query.populate_existing())
    item = query.first()
    if item is None:
        raise ItemNotFound(item_id)
    return item


def list_items(*, search: str | None = None, low_stock_only: bool = False) -> list[InventoryItem]:
    query = db.session.query(InventoryItem)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(InventoryItem.name.ilike(pattern), InventoryItem.batch_no.ilike(pattern)))
    if low_stock_only:
        query = query.filter(InventoryItem.stock <= InventoryItem.low_stock_threshold)
    return query.order_by(InventoryItem.name.asc(), InventoryItem.id.asc()).all()


def reserve_and_commit(item_id: str, quantity_delta: int, *, now: datetime | None = None, commit: bool = True) -> int:
    """
    Apply a signed quantity change to one item and return the new stock.

    commit=False: run inside the caller's unit of work (finalization, import
    chunk). A failure raises before anything is flushed for this item and the
    caller's rollback discards the rest.

    Raises StockInsufficient when a negative delta would take stock below 0,
    ItemNotFound when the item does not exist.
    """
    if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int):
        raise ValidationError("quantity_delta must be an integer")

    def _apply() -> int:
        ts = now or utcnow()
        stmt = update(InventoryItem).where(InventoryItem.id == item_id)
        if quantity_delta < 0:
            stmt = stmt.where(InventoryItem.stock >= -quantity_delta)
        stmt = stmt.values(
            stock=InventoryItem.stock + quantity_delta,
            version_id=InventoryItem.version_id + 1,
            last_updated=ts,
        ).execution_options(synchronize_session=False)

        result = db.session.execute(stmt)
        if result.rowcount != 1:
            row = (
                db.session.query(InventoryItem.stock, InventoryItem.name)
                .filter(InventoryItem.id == item_id)
                .first()
            )
            if row is None:
                raise ItemNotFound(item_id)
            raise StockInsufficient(item_id, row.name, -quantity_delta, row.stock)

        _expire_cached_item(item_id)
        return db.session.query(InventoryItem.stock).filter(InventoryItem.id == item_id).scalar()

    if not commit:
        return _apply()

    def _op() -> int:
        begin_write_transaction()
        new_stock = _apply()
        db.session.commit()
        return new_stock

    return run_with_retry(_op)


def set_absolute_stock(item: InventoryItem, new_stock: int, *, now: datetime | None = None) -> int:
    """
    Set stock to an absolute value inside the caller's unit of work.

    Written as a delta against the row's current value and guarded by the
    version read with `item`, so a concurrent sale between read and write
    surfaces as ConcurrencyConflict instead of being overwritten.
    Returns the signed change that was applied.
    """
    if new_stock < 0:
        raise ValidationError("stock must be >= 0")
    delta = new_stock - item.stock
    if delta == 0:
        return 0

    result = db.session.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item.id, InventoryItem.version_id == item.version_id)
        .values(
            stock=new_stock,
            version_id=InventoryItem.version_id + 1,
            last_updated=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(
            f"Inventory item {item.id} changed while its stock was being set",
            details={"item_id": item.id},
        )
    _expire_cached_item(item.id)
    return delta


def _write_movements(movements: list[NewMovement], reference: str) -> AuditLogWriteFailure | None:
    if not movements:
        return None
    try:
        record_movements(movements, reference=reference)
    except AuditLogWriteFailure as failure:
        return failure
    return None


def create_item(fields: dict, actor: Actor, *, movement_date: date | None = None) -> StockWriteResult:
    """
    Add a catalog item. Opening stock is logged as an initial_stock movement.

    `fields` is a validated patch (see routes.inventory ITEM_CREATE_POLICY).
    """
    def _op() -> InventoryItem:
        now = utcnow()
        item = InventoryItem(
            name=fields["name"],
            description=fields.get("description"),
            unit=fields.get("unit"),
            batch_no=fields.get("batch_no"),
            stock=fields.get("stock") or 0,
            low_stock_threshold=fields.get("low_stock_threshold") or 0,
            rate=fields["rate"],
            mrp=fields["mrp"],
            expiry_date=fields.get("expiry_date"),
            tags=fields.get("tags") or [],
            created_at=now,
            last_updated=now,
        )
        db.session.add(item)
        db.session.commit()
        return item

    item = run_with_retry(_op)
    logger.info("item %s created by %s with stock %d", item.id, actor.user_id, item.stock)

    movement = new_movement(
        item_id=item.id,
        item_name=item.name,
        quantity_delta=item.stock,
        source=SOURCE_INITIAL_STOCK,
        actor=actor,
        reason="Initial stock",
        movement_date=movement_date,
    )
    failure = _write_movements([movement] if movement else [], f"item {item.id}")
    return StockWriteResult(item=item, audit_failure=failure)


def update_item(
    item_id: str,
    patch: dict,
    actor: Actor,
    *,
    expected_version: int | None = None,
    reason: str | None = None,
) -> StockWriteResult:
    """
    Edit catalog fields. A changed `stock` is applied as an absolute set in
    the same transaction and logged as a stock_edit movement for the net change.

    expected_version: the version_id the editor loaded. A mismatch means
    somebody else (a sale, another editor) changed the item first.
    """
    def _op() -> tuple[InventoryItem, int, str]:
        begin_write_transaction()
        item = get_item(item_id, lock=True)
        if expected_version is not None and item.version_id != expected_version:
            raise ConcurrencyConflict(
                "Inventory item was modified by another user; reload and retry",
                details={"item_id": item_id, "expected_version": expected_version, "current_version": item.version_id},
            )

        delta = 0
        if "stock" in patch and patch["stock"] is not None:
            delta = set_absolute_stock(item, patch["stock"])
            if delta:
                # The conditional UPDATE bumped the row; reload before touching other columns
                db.session.refresh(item)

        changed = False
        for key, value in patch.items():
            if key == "stock" or key not in ITEM_MUTABLE_FIELDS:
                continue
            if getattr(item, key) != value:
                setattr(item, key, value)
                changed = True
        if changed:
            item.last_updated = utcnow()

        name = item.name
        db.session.commit()
        return item, delta, name

    item, delta, name = run_with_retry(_op)

    movement = new_movement(
        item_id=item_id,
        item_name=name,
        quantity_delta=delta,
        source=SOURCE_STOCK_EDIT,
        actor=actor,
        reason=reason or "Stock edited",
    )
    failure = _write_movements([movement] if movement else [], f"item {item_id}")
    return StockWriteResult(item=item, audit_failure=failure)


def adjust_stock(
    item_id: str,
    *,
    direction: str,
    quantity: int,
    actor: Actor,
    reason: str | None = None,
    movement_date: date | None = None,
) -> StockWriteResult:
    """
    Record a manual stock movement (arrival, disposal, correction).

    An "out" that exceeds stock on hand is rejected with StockInsufficient.
    """
    delta = quantity if direction == "in" else -quantity
    reserve_and_commit(item_id, delta)
    item = get_item(item_id)
    logger.info("item %s adjusted %+d by %s", item_id, delta, actor.user_id)

    movement = new_movement(
        item_id=item.id,
        item_name=item.name,
        quantity_delta=delta,
        source=SOURCE_STOCK_EDIT,
        actor=actor,
        reason=reason,
        movement_date=movement_date,
    )
    failure = _write_movements([movement] if movement else [], f"item {item_id}")
    return StockWriteResult(item=item, audit_failure=failure)
