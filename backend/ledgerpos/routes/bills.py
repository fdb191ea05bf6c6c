# Overview: Flask API routes for bills; finalization, history paging, edits, export and admin deletion.

from flask import Blueprint, request, jsonify, g, current_app, Response

from ..time_utils import parse_iso_date
from ..validation import ValidationError, parse_amount
from ..decorators import require_actor, require_role
from ..services import bill_service, finalization_service, history_service, reporting_service
from ..services.actor import ROLE_ADMIN
from ..services.bill_service import BillEditRequest, clean_customer_fields
from ..services.finalization_service import BillDraft, PaymentTerms
from .errors import HANDLED_ERRORS, error_response

"""
Money fields are serialized as decimal strings ("450.00").
Bill dates are UTC, ISO-8601 with a trailing Z.
"""

bills_bp = Blueprint("bills", __name__, url_prefix="/api/bills")


def _filters_from_args() -> history_service.BillFilters:
    try:
        start_date = parse_iso_date(request.args.get("start_date"))
        end_date = parse_iso_date(request.args.get("end_date"))
    except ValueError:
        raise ValidationError("start_date and end_date must be YYYY-MM-DD")
    status = request.args.get("status") or None
    if status == "all":
        status = None
    return history_service.BillFilters(
        status=status,
        customer_query=request.args.get("customer") or None,
        bill_id_query=request.args.get("bill_id") or None,
        start_date=start_date,
        end_date=end_date,
    )


@bills_bp.post("/finalize")
@require_actor
def finalize_bill_route():
    """
    Finalize a bill.

    Body: {"items": [{"item_id", "quantity"}], "status": "paid"|"debt",
    "amount_paid"?, "discount_amount"?, "customer_name"?, "customer_address"?,
    "remarks"?, "finalize_key"?}

    201 on a new bill, 200 when finalize_key replays an existing one.
    """
    payload = request.get_json(silent=True) or {}

    try:
        draft = BillDraft.from_payload(payload.get("items"))
        payment = PaymentTerms.from_payload(payload)
        finalize_key = payload.get("finalize_key")
        if finalize_key is not None and (not isinstance(finalize_key, str) or not 0 < len(finalize_key) <= 64):
            raise ValidationError("finalize_key must be a string of 1 to 64 characters")
        result = finalization_service.finalize_bill(draft, payment, g.actor, finalize_key=finalize_key)
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to finalize bill")
        return jsonify({"error": "Internal server error"}), 500

    body = {"bill": result.bill.to_dict(), "replayed": result.replayed}
    if result.warnings:
        body["warnings"] = result.warnings
    return jsonify(body), 200 if result.replayed else 201


@bills_bp.get("")
def list_bills_route():
    page_size = request.args.get("page_size", type=int) or current_app.config["BILLS_PAGE_SIZE"]
    page_size = max(1, min(page_size, current_app.config["BILLS_PAGE_SIZE_MAX"]))

    try:
        filters = _filters_from_args()
        page = history_service.list_bills_page(
            filters,
            cursor=request.args.get("cursor") or None,
            direction=request.args.get("direction", history_service.DIRECTION_NEXT),
            page_size=page_size,
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    body = page.to_dict()
    body["page_size"] = page_size
    return jsonify(body), 200


@bills_bp.get("/export")
def export_bills_route():
    fmt = (request.args.get("format") or "csv").lower()
    try:
        filters = _filters_from_args()
        content, mimetype, filename = reporting_service.export_bills(filters, fmt=fmt)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return Response(
        content,
        mimetype=mimetype,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@bills_bp.get("/<bill_id>")
def get_bill_route(bill_id: str):
    try:
        bill = bill_service.get_bill(bill_id)
    except bill_service.BillNotFound as e:
        return jsonify({"error": str(e)}), 404
    body = {"bill": bill.to_dict()}
    if request.args.get("include_edits", "").lower() in ("1", "true", "yes"):
        body["edits"] = [e.to_dict() for e in bill_service.list_bill_edits(bill_id)]
    return jsonify(body), 200


@bills_bp.patch("/<bill_id>")
@require_actor
def edit_bill_route(bill_id: str):
    """
    Correct a finalized bill.

    Body: {"edit_key", "expected_version"?, "customer_name"?,
    "customer_address"?, "remarks"?, "discount_amount"?, and at most one of
    "paid_in_full": true | "payment_received_now": n | "status"}
    """
    payload = request.get_json(silent=True) or {}

    try:
        edit_key = payload.get("edit_key")
        if not isinstance(edit_key, str) or not 0 < len(edit_key) <= 64:
            raise ValidationError("edit_key must be a string of 1 to 64 characters")
        expected_version = payload.get("expected_version")
        if expected_version is not None and (
            isinstance(expected_version, bool) or not isinstance(expected_version, int)
        ):
            raise ValidationError("expected_version must be an integer")
        paid_in_full = payload.get("paid_in_full", False)
        if not isinstance(paid_in_full, bool):
            raise ValidationError("paid_in_full must be a boolean")

        edit = BillEditRequest(
            edit_key=edit_key,
            customer=clean_customer_fields(payload),
            discount_amount=parse_amount(payload.get("discount_amount"), "discount_amount"),
            paid_in_full=paid_in_full,
            payment_received_now=parse_amount(payload.get("payment_received_now"), "payment_received_now"),
            status=payload.get("status"),
            expected_version=expected_version,
        )
        bill = bill_service.edit_bill(bill_id, edit, g.actor)
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to edit bill")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"bill": bill.to_dict()}), 200


@bills_bp.post("/batch-delete")
@require_actor
@require_role(ROLE_ADMIN)
def batch_delete_route():
    """
    Permanently delete bills. Admin only. Stock sold on them is not restored.
    """
    payload = request.get_json(silent=True) or {}

    try:
        result = bill_service.batch_delete_bills(payload.get("bill_ids"), g.actor)
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete bills")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result), 200
