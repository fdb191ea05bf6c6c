# Overview: Service-layer read paths for bill history and movement history; filtering and cursor paging.

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator

from sqlalchemy import and_, or_

from ..extensions import db
from ..models import BillRecord, DailyMovementLog, MovementEvent
from ..models.bills import BILL_STATUSES
from ..models.movements import MOVEMENT_SOURCES
from ..time_utils import parse_iso_datetime, to_utc_z, today
from ..validation import ValidationError
"""
Paging semantics:
- Bills are ordered by (created_at DESC, id DESC). Status and date range are
  applied in the query; customer-name and bill-id substrings are applied to
  the fetched rows, so a page may hold fewer than page_size bills, or none.
- Cursors point at the first and last rows the query returned, not at the
  first and last rows that survived the substring filters. An empty filtered
  page therefore still pages forward.
- A page is the last one only when the query itself returned fewer rows than
  page_size.
- Backward paging reads one extra row to decide has_prev. An empty page past
  the oldest row keeps its incoming cursor as prev_cursor.
- Date filters are inclusive calendar days: end_date covers the whole day.
"""

DIRECTION_NEXT = "next"
DIRECTION_PREV = "prev"


@dataclass(frozen=True)
class BillFilters:
    status: str | None = None
    customer_query: str | None = None
    bill_id_query: str | None = None
    start_date: date | None = None
    end_date: date | None = None

    def __post_init__(self):
        if self.status is not None and self.status not in BILL_STATUSES:
            raise ValidationError("status must be 'paid' or 'debt'")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("start_date cannot be after end_date")

    def matches(self, bill: BillRecord) -> bool:
        if self.customer_query:
            if self.customer_query.strip().lower() not in (bill.customer_name or "").lower():
                return False
        if self.bill_id_query:
            if self.bill_id_query.strip().lower() not in bill.id.lower():
                return False
        return True


@dataclass
class BillPage:
    items: list[BillRecord]
    fetched: int
    next_cursor: str | None = None
    prev_cursor: str | None = None
    has_next: bool = False
    has_prev: bool = False

    def to_dict(self) -> dict:
        return {
            "items": [b.to_dict() for b in self.items],
            "fetched": self.fetched,
            "next_cursor": self.next_cursor,
            "prev_cursor": self.prev_cursor,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }


def encode_cursor(bill: BillRecord) -> str:
    raw = f"{to_utc_z(bill.created_at)}|{bill.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        ts_raw, bill_id = raw.split("|", 1)
        ts = parse_iso_datetime(ts_raw)
    except (ValueError, binascii.Error, UnicodeError):
        raise ValidationError("Invalid cursor")
    if ts is None or not bill_id:
        raise ValidationError("Invalid cursor")
    return ts, bill_id


def _base_query(filters: BillFilters):
    q = db.session.query(BillRecord)
    if filters.status:
        q = q.filter(BillRecord.status == filters.status)
    if filters.start_date:
        q = q.filter(BillRecord.created_at >= datetime.combine(filters.start_date, datetime.min.time()))
    if filters.end_date:
        end_exclusive = datetime.combine(filters.end_date + timedelta(days=1), datetime.min.time())
        q = q.filter(BillRecord.created_at < end_exclusive)
    return q


def list_bills_page(
    filters: BillFilters,
    *,
    cursor: str | None = None,
    direction: str = DIRECTION_NEXT,
    page_size: int = 20,
) -> BillPage:
    """
    Fetch one page of bill history.

    direction="next" reads rows older than the cursor, "prev" reads rows newer
    than it. Without a cursor the newest page is returned, and so is a "prev"
    request that finds nothing newer.
    """
    if direction not in (DIRECTION_NEXT, DIRECTION_PREV):
        raise ValidationError("direction must be 'next' or 'prev'")
    if page_size < 1:
        raise ValidationError("page_size must be >= 1")

    q = _base_query(filters)

    if cursor is None:
        rows = q.order_by(BillRecord.created_at.desc(), BillRecord.id.desc()).limit(page_size).all()
        has_next = len(rows) == page_size
        has_prev = False
    elif direction == DIRECTION_NEXT:
        cursor_dt, cursor_id = decode_cursor(cursor)
        rows = (
            q.filter(
                or_(
                    BillRecord.created_at < cursor_dt,
                    and_(BillRecord.created_at == cursor_dt, BillRecord.id < cursor_id),
                )
            )
            .order_by(BillRecord.created_at.desc(), BillRecord.id.desc())
            .limit(page_size)
            .all()
        )
        has_next = len(rows) == page_size
        has_prev = True
    else:
        cursor_dt, cursor_id = decode_cursor(cursor)
        # One extra row tells whether anything is newer than this page
        rows = (
            q.filter(
                or_(
                    BillRecord.created_at > cursor_dt,
                    and_(BillRecord.created_at == cursor_dt, BillRecord.id > cursor_id),
                )
            )
            .order_by(BillRecord.created_at.asc(), BillRecord.id.asc())
            .limit(page_size + 1)
            .all()
        )
        if not rows:
            # Nothing newer than the cursor any more; that is the newest page
            return list_bills_page(filters, page_size=page_size)
        has_prev = len(rows) > page_size
        rows = rows[:page_size]
        rows.reverse()
        has_next = True

    if rows:
        next_cursor = encode_cursor(rows[-1]) if has_next else None
        prev_cursor = encode_cursor(rows[0]) if has_prev else None
    else:
        # An empty page past the last row still leads back to the rows before it
        next_cursor = None
        prev_cursor = cursor if has_prev else None

    return BillPage(
        items=[b for b in rows if filters.matches(b)],
        fetched=len(rows),
        next_cursor=next_cursor,
        prev_cursor=prev_cursor,
        has_next=has_next and bool(rows),
        has_prev=prev_cursor is not None,
    )


def iter_bills(filters: BillFilters, *, page_size: int = 100) -> Iterator[BillRecord]:
    """Walk every page forward and yield the bills that pass the filters."""
    page = list_bills_page(filters, page_size=page_size)
    while True:
        yield from page.items
        if not page.has_next:
            return
        page = list_bills_page(filters, cursor=page.next_cursor, page_size=page_size)


@dataclass
class MovementDay:
    bucket: DailyMovementLog
    events: list[MovementEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return self.bucket.to_dict(movements=self.events)


@dataclass
class MovementHistoryPage:
    days: list[MovementDay]
    range_start: date
    range_end: date
    next_before: date
    can_load_more: bool

    def to_dict(self) -> dict:
        return {
            "days": [d.to_dict() for d in self.days],
            "range_start": self.range_start.isoformat(),
            "range_end": self.range_end.isoformat(),
            "next_before": self.next_before.isoformat(),
            "can_load_more": self.can_load_more,
        }


def load_movement_history(
    *,
    before: date | None = None,
    days: int = 7,
    item_id: str | None = None,
    source: str | None = None,
) -> MovementHistoryPage:
    """
    Load the day buckets in the window of `days` calendar days ending at
    `before` (inclusive; today when omitted), newest day first.

    can_load_more turns false only when this window found no buckets and no
    older bucket exists either.
    """
    if days < 1:
        raise ValidationError("days must be >= 1")
    if source is not None and source not in MOVEMENT_SOURCES:
        raise ValidationError(f"source must be one of: {', '.join(MOVEMENT_SOURCES)}")

    range_end = before or today()
    range_start = range_end - timedelta(days=days - 1)

    buckets = (
        db.session.query(DailyMovementLog)
        .filter(DailyMovementLog.date >= range_start, DailyMovementLog.date <= range_end)
        .order_by(DailyMovementLog.date.desc())
        .all()
    )

    result: list[MovementDay] = []
    if buckets:
        events_q = db.session.query(MovementEvent).filter(
            MovementEvent.daily_log_id.in_([b.id for b in buckets])
        )
        if item_id:
            events_q = events_q.filter(MovementEvent.item_id == item_id)
        if source:
            events_q = events_q.filter(MovementEvent.source == source)
        by_bucket: dict[str, list[MovementEvent]] = {}
        for ev in events_q.order_by(MovementEvent.recorded_at.desc(), MovementEvent.id.desc()).all():
            by_bucket.setdefault(ev.daily_log_id, []).append(ev)
        result = [MovementDay(bucket=b, events=by_bucket.get(b.id, [])) for b in buckets]

    if result:
        can_load_more = True
    else:
        can_load_more = (
            db.session.query(DailyMovementLog.id)
            .filter(DailyMovementLog.date < range_start)
            .first()
            is not None
        )

    return MovementHistoryPage(
        days=result,
        range_start=range_start,
        range_end=range_end,
        next_before=range_start - timedelta(days=1),
        can_load_more=can_load_more,
    )
