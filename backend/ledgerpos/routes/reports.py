# Overview: Flask API routes for reports; dashboard totals and sales analytics.

from flask import Blueprint, request, jsonify

from ..time_utils import parse_iso_date
from ..services import reporting_service
from ..validation import ValidationError

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/summary")
def summary_route():
    try:
        start = parse_iso_date(request.args.get("start_date"))
        end = parse_iso_date(request.args.get("end_date"))
    except ValueError:
        return jsonify({"error": "start_date and end_date must be YYYY-MM-DD"}), 400

    try:
        return jsonify(reporting_service.dashboard_summary(start=start, end=end)), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@reports_bp.get("/sales")
def sales_route():
    """
    Sales and profit grouped by ?period=daily|weekly|monthly over an optional
    start_date/end_date range, plus today / this week / this month.
    """
    period = (request.args.get("period") or "daily").lower()
    try:
        start = parse_iso_date(request.args.get("start_date"))
        end = parse_iso_date(request.args.get("end_date"))
    except ValueError:
        return jsonify({"error": "start_date and end_date must be YYYY-MM-DD"}), 400

    try:
        body = reporting_service.sales_analytics(period=period, start=start, end=end)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    body["current"] = reporting_service.sales_snapshot()
    return jsonify(body), 200
