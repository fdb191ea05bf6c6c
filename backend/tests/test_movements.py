from datetime import date, timedelta

import pytest

from ledgerpos.models import DailyMovementLog, MovementEvent
from ledgerpos.services import movement_service
from ledgerpos.services.history_service import load_movement_history
from ledgerpos.services.movement_service import (
    AuditLogWriteFailure,
    MovementLogError,
    NewMovement,
    PermissionDenied,
    append_movement,
    new_movement,
    record_movements,
)
from ledgerpos.validation import ValidationError


def _event(day, *, qty=1, type_="out", source="sale", item_id="item-1"):
    return NewMovement(
        item_id=item_id,
        item_name="Item",
        type=type_,
        quantity=qty,
        source=source,
        moved_by_user_id="u-staff",
        moved_by_user_name="Counter Staff",
        movement_date=day,
    )


def test_append_creates_bucket_lazily_and_counts(db_session):
    day = date(2026, 6, 1)
    assert db_session.get(DailyMovementLog, "2026-06-01") is None

    append_movement("2026-06-01", _event(day, qty=3, type_="in", source="stock_edit"))
    append_movement("2026-06-01", _event(day, qty=2))

    bucket = db_session.get(DailyMovementLog, "2026-06-01")
    db_session.refresh(bucket)
    assert bucket.event_count == 2
    assert bucket.total_in == 3
    assert bucket.total_out == 2
    assert [e.quantity for e in bucket.movements] == [3, 2]


def test_append_rejects_mismatched_bucket_and_bad_events(db_session):
    with pytest.raises(MovementLogError):
        append_movement("2026-06-02", _event(date(2026, 6, 1)))
    with pytest.raises(MovementLogError):
        append_movement("2026-06-01", _event(date(2026, 6, 1), qty=0))
    with pytest.raises(MovementLogError):
        append_movement("2026-06-01", _event(date(2026, 6, 1), source="gift"))
    assert db_session.query(MovementEvent).count() == 0


def test_new_movement_for_zero_change_is_none(staff):
    assert new_movement(item_id="a", item_name="A", quantity_delta=0, source="stock_edit", actor=staff) is None
    ev = new_movement(item_id="a", item_name="A", quantity_delta=-4, source="stock_edit", actor=staff)
    assert (ev.type, ev.quantity) == ("out", 4)


def test_record_movements_reports_only_the_failures(db_session, monkeypatch):
    real_append = movement_service.append_movement
    day = date(2026, 6, 1)
    good, bad = _event(day, item_id="good"), _event(day, item_id="bad")

    def flaky(daily_key, event, *, attempts=3):
        if event.item_id == "bad":
            raise movement_service.ConcurrencyConflict("write lock timed out")
        return real_append(daily_key, event, attempts=attempts)

    monkeypatch.setattr(movement_service, "append_movement", flaky)

    with pytest.raises(AuditLogWriteFailure) as exc:
        record_movements([good, bad], reference="bill B-000001")

    assert [e.item_id for e in exc.value.failed_events] == ["bad"]
    assert [e.item_id for e in db_session.query(MovementEvent).all()] == ["good"]


def test_clear_all_is_admin_only(db_session, staff, admin):
    append_movement("2026-06-01", _event(date(2026, 6, 1)))

    with pytest.raises(PermissionDenied):
        movement_service.clear_all(staff)

    result = movement_service.clear_all(admin)
    assert result == {"deleted_buckets": 1, "deleted_events": 1}
    assert db_session.query(DailyMovementLog).count() == 0


def _seed_days(*days):
    for d in days:
        append_movement(d.isoformat(), _event(d))


def test_history_walks_back_by_days(db_session):
    today = date(2026, 6, 30)
    _seed_days(today, today - timedelta(days=2), today - timedelta(days=9))

    first = load_movement_history(before=today, days=7)
    assert [d.bucket.id for d in first.days] == ["2026-06-30", "2026-06-28"]
    assert first.next_before == date(2026, 6, 23)
    assert first.can_load_more is True

    second = load_movement_history(before=first.next_before, days=7)
    assert [d.bucket.id for d in second.days] == ["2026-06-21"]
    assert second.can_load_more is True

    third = load_movement_history(before=second.next_before, days=7)
    assert third.days == []
    assert third.can_load_more is False


def test_history_gap_window_still_allows_loading_older(db_session):
    today = date(2026, 6, 30)
    _seed_days(today - timedelta(days=20))

    page = load_movement_history(before=today, days=7)
    assert page.days == []
    assert page.can_load_more is True


def test_history_filters_events_by_item_and_source(db_session):
    d = date(2026, 6, 30)
    append_movement(d.isoformat(), _event(d, item_id="a"))
    append_movement(d.isoformat(), _event(d, item_id="b", source="csv_import", type_="in"))

    page = load_movement_history(before=d, days=1, item_id="b")
    assert [e.item_id for e in page.days[0].events] == ["b"]
    page = load_movement_history(before=d, days=1, source="sale")
    assert [e.item_id for e in page.days[0].events] == ["a"]

    with pytest.raises(ValidationError):
        load_movement_history(before=d, days=1, source="gift")
