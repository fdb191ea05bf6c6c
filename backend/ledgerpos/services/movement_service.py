# Overview: Service-layer operations for the day-bucketed movement log.

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import DailyMovementLog, MovementEvent
from ..models.movements import MOVEMENT_IN, MOVEMENT_SOURCES, MOVEMENT_TYPES
from ..time_utils import day_key, today, utcnow
from .actor import Actor
from .concurrency import ConcurrencyConflict, begin_write_transaction, run_with_retry
"""
Movement log invariants (authoritative)

- Append-only. Events are never updated or deleted one at a time; clear_all()
  is the only delete and it is admin-only.
- Each calendar day is one DailyMovementLog row, created lazily by the first
  append of that day.
- An append is one transaction: insert the event row, then bump the bucket's
  counters and last_updated with UPDATE ... SET x = x + n.
- The movement log is secondary to stock and bills. A failed append after a
  committed sale is reported (AuditLogWriteFailure), never rolled back into
  the sale.
"""

logger = logging.getLogger(__name__)


class MovementLogError(ValueError):
    """Raised for invalid movement events."""


class PermissionDenied(PermissionError):
    """Raised when a destructive operation is attempted without admin role."""


class AuditLogWriteFailure(Exception):
    """
    Movement events could not be appended after the financial write committed.

    Non-fatal: stock and bill state are already correct and stay as they are.
    Carries the events that were not written so an operator can reconcile.
    """

    def __init__(self, reference: str, failed_events: list["NewMovement"], cause: str | None = None):
        super().__init__(
            f"{len(failed_events)} movement event(s) for {reference} could not be written to the audit log"
        )
        self.reference = reference
        self.failed_events = failed_events
        self.cause = cause

    def to_dict(self) -> dict:
        return {
            "type": "audit_log_write_failure",
            "message": str(self),
            "reference": self.reference,
            "cause": self.cause,
            "failed_events": [e.to_dict() for e in self.failed_events],
        }


def generate_event_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class NewMovement:
    """A movement event that has not been filed into its day bucket yet."""
    item_id: str
    item_name: str
    type: str
    quantity: int
    source: str
    moved_by_user_id: str
    moved_by_user_name: str
    movement_date: date = field(default_factory=today)
    reason: str | None = None
    event_id: str = field(default_factory=generate_event_id)
    recorded_at: datetime = field(default_factory=utcnow)

    @property
    def daily_key(self) -> str:
        return day_key(self.movement_date)

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
        }


def new_movement(
    *,
    item_id: str,
    item_name: str,
    quantity_delta: int,
    source: str,
    actor: Actor,
    reason: str | None = None,
    movement_date: date | None = None,
) -> NewMovement | None:
    """
    Build the event for a signed stock change. Returns None for a zero change,
    since only the net movement is ever recorded.
    """
    if quantity_delta == 0:
        return None
    return NewMovement(
        item_id=item_id,
        item_name=item_name,
        type="in" if quantity_delta > 0 else "out",
        quantity=abs(quantity_delta),
        source=source,
        reason=reason,
        movement_date=movement_date or today(),
        moved_by_user_id=actor.user_id,
        moved_by_user_name=actor.display_name or "Unknown User",
    )


def _validate_event(daily_key: str, event: NewMovement) -> None:
    if event.type not in MOVEMENT_TYPES:
        raise MovementLogError(f"invalid movement type: {event.type}")
    if event.source not in MOVEMENT_SOURCES:
        raise MovementLogError(f"invalid movement source: {event.source}")
    if isinstance(event.quantity, bool) or not isinstance(event.quantity, int) or event.quantity <= 0:
        raise MovementLogError("movement quantity must be a positive integer")
    if not event.moved_by_user_id:
        raise MovementLogError("moved_by_user_id is required")
    if daily_key != event.daily_key:
        raise MovementLogError("event movement_date does not match its daily bucket")


def _ensure_bucket(daily_key: str, now: datetime) -> None:
    exists = db.session.query(DailyMovementLog.id).filter_by(id=daily_key).first()
    if exists is not None:
        return

    nested = db.session.begin_nested()
    try:
        db.session.add(
            DailyMovementLog(
                id=daily_key,
                date=date.fromisoformat(daily_key),
                event_count=0,
                total_in=0,
                total_out=0,
                created_at=now,
                last_updated=now,
            )
        )
        db.session.flush()
        nested.commit()
    except IntegrityError:
        # First event of the day raced with another writer; the bucket exists now
        nested.rollback()


def append_movement(daily_key: str, event: NewMovement, *, attempts: int = 3) -> MovementEvent:
    """
    Append one event to the bucket for daily_key, creating the bucket on first write.

    Concurrent appends to the same day are safe: the bucket row is only ever
    touched through an atomic increment, never rewritten from a prior read.
    """
    _validate_event(daily_key, event)

    def _op() -> MovementEvent:
        begin_write_transaction()
        now = utcnow()
        _ensure_bucket(daily_key, now)

        row = MovementEvent(
            daily_log_id=daily_key,
            event_id=event.event_id,
            item_id=event.item_id,
            item_name=event.item_name,
            type=event.type,
            quantity=event.quantity,
            movement_date=event.movement_date,
            source=event.source,
            reason=event.reason,
            moved_by_user_id=event.moved_by_user_id,
            moved_by_user_name=event.moved_by_user_name,
            recorded_at=event.recorded_at,
        )
        db.session.add(row)
        db.session.flush()

        inbound = event.quantity if event.type == MOVEMENT_IN else 0
        outbound = event.quantity - inbound
        db.session.execute(
            update(DailyMovementLog)
            .where(DailyMovementLog.id == daily_key)
            .values(
                event_count=DailyMovementLog.event_count + 1,
                total_in=DailyMovementLog.total_in + inbound,
                total_out=DailyMovementLog.total_out + outbound,
                last_updated=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return row

    return run_with_retry(_op, attempts=attempts)


def record_movements(events: list[NewMovement], *, reference: str, attempts: int | None = None) -> int:
    """
    Append movements that follow an already-committed stock change.

    Each event gets a bounded number of attempts. Whatever still fails is
    collected and raised once as AuditLogWriteFailure after the rest have been
    written. Returns the number of events written.
    """
    if attempts is None:
        attempts = current_app.config.get("AUDIT_APPEND_ATTEMPTS", 3)

    written = 0
    failed: list[NewMovement] = []
    last_error: Exception | None = None
    for event in events:
        try:
            append_movement(event.daily_key, event, attempts=attempts)
            written += 1
        except (SQLAlchemyError, ConcurrencyConflict) as exc:
            db.session.rollback()
            last_error = exc
            failed.append(event)
            logger.error(
                "movement append failed for %s item=%s event=%s: %s",
                reference, event.item_id, event.event_id, exc,
            )

    if failed:
        logger.warning(
            "audit log gap for %s: %d of %d movement event(s) not written",
            reference, len(failed), len(events),
        )
        raise AuditLogWriteFailure(reference, failed, str(last_error) if last_error else None)
    return written


def clear_all(actor: Actor) -> dict:
    """
    Delete every day bucket and its events. Irreversible; admin only.
    """
    if not actor.is_admin:
        raise PermissionDenied("clearing the movement log requires the admin role")

    def _op() -> dict:
        begin_write_transaction()
        events = db.session.execute(delete(MovementEvent).execution_options(synchronize_session=False)).rowcount
        buckets = db.session.execute(delete(DailyMovementLog).execution_options(synchronize_session=False)).rowcount
        db.session.commit()
        return {"deleted_buckets": buckets, "deleted_events": events}

    result = run_with_retry(_op)
    db.session.expire_all()
    logger.warning(
        "movement log cleared by %s (%s): %d bucket(s), %d event(s)",
        actor.user_id, actor.display_name, result["deleted_buckets"], result["deleted_events"],
    )
    return result
