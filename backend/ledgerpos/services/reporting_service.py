# Overview: Service-layer operations for reporting; dashboard totals, sales analytics and bill exports.

from __future__ import annotations

import csv
import io
from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import BillLine, BillRecord, InventoryItem
from ..models.bills import BILL_STATUS_DEBT
from ..money import ZERO, to_money
from ..time_utils import to_utc_z, today
from ..validation import ValidationError
from .history_service import BillFilters, iter_bills

EXPORT_FORMATS = ("csv", "xlsx")

EXPORT_COLUMNS = [
    "Bill Number",
    "Date",
    "Customer Name",
    "Customer Address",
    "Status",
    "Item Name",
    "Quantity",
    "MRP",
    "Rate",
    "Line Total",
    "Sub Total",
    "Discount",
    "Grand Total",
    "Amount Paid",
    "Remaining Balance",
    "Remarks",
]


def _money(value) -> str:
    return str(to_money(value if value is not None else ZERO))


def dashboard_summary(*, start: date | None = None, end: date | None = None) -> dict:
    """Catalog health and sales totals for [start, end], both inclusive calendar days."""
    if start and end and start > end:
        raise ValidationError("start_date cannot be after end_date")

    warn_days = current_app.config.get("EXPIRY_WARNING_DAYS", 30)
    expiry_cutoff = today() + timedelta(days=warn_days)

    item_count, inventory_value, units_on_hand = db.session.query(
        func.count(InventoryItem.id),
        func.coalesce(func.sum(InventoryItem.stock * InventoryItem.rate), 0),
        func.coalesce(func.sum(InventoryItem.stock), 0),
    ).one()
    low_stock = (
        db.session.query(func.count(InventoryItem.id))
        .filter(InventoryItem.stock <= InventoryItem.low_stock_threshold)
        .scalar()
    )
    expiring = (
        db.session.query(func.count(InventoryItem.id))
        .filter(InventoryItem.expiry_date.isnot(None), InventoryItem.expiry_date <= expiry_cutoff)
        .scalar()
    )

    bills_q = db.session.query(
        func.count(BillRecord.id),
        func.coalesce(func.sum(BillRecord.grand_total), 0),
        func.coalesce(func.sum(BillRecord.amount_actually_paid), 0),
        func.coalesce(func.sum(BillRecord.remaining_balance), 0),
    )
    if start:
        bills_q = bills_q.filter(BillRecord.created_at >= datetime.combine(start, datetime.min.time()))
    if end:
        bills_q = bills_q.filter(BillRecord.created_at < datetime.combine(end + timedelta(days=1), datetime.min.time()))
    bill_count, gross, collected, outstanding = bills_q.one()

    debt_q = db.session.query(func.count(BillRecord.id)).filter(BillRecord.status == BILL_STATUS_DEBT)
    if start:
        debt_q = debt_q.filter(BillRecord.created_at >= datetime.combine(start, datetime.min.time()))
    if end:
        debt_q = debt_q.filter(BillRecord.created_at < datetime.combine(end + timedelta(days=1), datetime.min.time()))

    return {
        "range": {
            "start_date": start.isoformat() if start else None,
            "end_date": end.isoformat() if end else None,
        },
        "inventory": {
            "item_count": int(item_count or 0),
            "units_on_hand": int(units_on_hand or 0),
            "inventory_value": _money(inventory_value),
            "low_stock_count": int(low_stock or 0),
            "expiring_within_days": warn_days,
            "expiring_count": int(expiring or 0),
        },
        "sales": {
            "bill_count": int(bill_count or 0),
            "debt_bill_count": int(debt_q.scalar() or 0),
            "gross_sales": _money(gross),
            "collected": _money(collected),
            "outstanding_debt": _money(outstanding),
        },
    }


ANALYTICS_PERIODS = ("daily", "weekly", "monthly")


def _as_date(value) -> date:
    # SQLite returns DATE() as text
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _daily_sales(start: date | None, end: date | None) -> dict[date, dict]:
    """Bill count, sales (grand totals) and cost of goods per calendar day, grouped in SQL."""
    day = func.date(BillRecord.created_at)
    sales_q = db.session.query(
        day,
        func.count(BillRecord.id),
        func.coalesce(func.sum(BillRecord.grand_total), 0),
    )
    cost_q = db.session.query(
        day,
        func.coalesce(func.sum(BillLine.quantity_in_bill * BillLine.rate), 0),
    ).join(BillLine, BillLine.bill_id == BillRecord.id)
    if start:
        lower = datetime.combine(start, datetime.min.time())
        sales_q = sales_q.filter(BillRecord.created_at >= lower)
        cost_q = cost_q.filter(BillRecord.created_at >= lower)
    if end:
        upper = datetime.combine(end + timedelta(days=1), datetime.min.time())
        sales_q = sales_q.filter(BillRecord.created_at < upper)
        cost_q = cost_q.filter(BillRecord.created_at < upper)

    days: dict[date, dict] = {}
    for raw_day, bill_count, sales in sales_q.group_by(day).all():
        days[_as_date(raw_day)] = {"bill_count": int(bill_count), "sales": to_money(sales), "cost": ZERO}
    for raw_day, cost in cost_q.group_by(day).all():
        entry = days.setdefault(_as_date(raw_day), {"bill_count": 0, "sales": ZERO, "cost": ZERO})
        entry["cost"] = to_money(cost)
    return days


def _period_start(day: date, period: str) -> date:
    if period == "weekly":
        return day - timedelta(days=day.weekday())
    if period == "monthly":
        return day.replace(day=1)
    return day


def _add_sales(acc: dict, entry: dict) -> None:
    acc["bill_count"] += entry["bill_count"]
    acc["sales"] += entry["sales"]
    acc["cost"] += entry["cost"]


def _sales_row(acc: dict) -> dict:
    return {
        "bill_count": acc["bill_count"],
        "total_sales": _money(acc["sales"]),
        "cost_of_goods": _money(acc["cost"]),
        "total_profit": _money(acc["sales"] - acc["cost"]),
    }


def _empty_sales() -> dict:
    return {"bill_count": 0, "sales": ZERO, "cost": ZERO}


def sales_analytics(*, period: str = "daily", start: date | None = None, end: date | None = None) -> dict:
    """
    Sales and profit per day, week (starting Monday) or month, newest first.

    Sales are bill grand totals, after discount. Profit is sales minus the
    cost of goods, quantity times the rate snapshotted on each bill line.
    """
    if period not in ANALYTICS_PERIODS:
        raise ValidationError(f"period must be one of: {', '.join(ANALYTICS_PERIODS)}")
    if start and end and start > end:
        raise ValidationError("start_date cannot be after end_date")

    periods: dict[date, dict] = {}
    totals = _empty_sales()
    for day, entry in _daily_sales(start, end).items():
        _add_sales(periods.setdefault(_period_start(day, period), _empty_sales()), entry)
        _add_sales(totals, entry)

    return {
        "period": period,
        "range": {
            "start_date": start.isoformat() if start else None,
            "end_date": end.isoformat() if end else None,
        },
        "rows": [
            {"period_start": key.isoformat(), **_sales_row(acc)}
            for key, acc in sorted(periods.items(), reverse=True)
        ],
        "totals": _sales_row(totals),
    }


def sales_snapshot(*, on: date | None = None) -> dict:
    """Sales and profit for the day, week and month containing `on` (today by default)."""
    on = on or today()
    week_start = _period_start(on, "weekly")
    month_start = _period_start(on, "monthly")

    today_acc, week_acc, month_acc = _empty_sales(), _empty_sales(), _empty_sales()
    for day, entry in _daily_sales(min(week_start, month_start), on).items():
        if day == on:
            _add_sales(today_acc, entry)
        if day >= week_start:
            _add_sales(week_acc, entry)
        if day >= month_start:
            _add_sales(month_acc, entry)

    return {
        "date": on.isoformat(),
        "today": _sales_row(today_acc),
        "this_week": _sales_row(week_acc),
        "this_month": _sales_row(month_acc),
    }


def _export_rows(filters: BillFilters):
    for bill in iter_bills(filters):
        common_head = [bill.id, to_utc_z(bill.created_at), bill.customer_name, bill.customer_address or "", bill.status]
        common_tail = [
            _money(bill.sub_total),
            _money(bill.discount_amount),
            _money(bill.grand_total),
            _money(bill.amount_actually_paid),
            _money(bill.remaining_balance),
            bill.remarks or "",
        ]
        for line in bill.lines:
            yield common_head + [
                line.name,
                line.quantity_in_bill,
                _money(line.mrp),
                _money(line.rate),
                _money(line.line_total),
            ] + common_tail


def export_bills(filters: BillFilters, *, fmt: str = "csv") -> tuple[bytes, str, str]:
    """
    Flatten every matching bill to one row per line.

    Returns (content, mimetype, download filename).
    """
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"format must be one of: {', '.join(EXPORT_FORMATS)}")
    stamp = today().isoformat()

    if fmt == "csv":
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(EXPORT_COLUMNS)
        writer.writerows(_export_rows(filters))
        return buf.getvalue().encode("utf-8"), "text/csv", f"sales_export_{stamp}.csv"

    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.title = "Sales"
    ws.append(EXPORT_COLUMNS)
    for row in _export_rows(filters):
        ws.append(row)
    out = io.BytesIO()
    wb.save(out)
    return (
        out.getvalue(),
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        f"sales_export_{stamp}.xlsx",
    )
