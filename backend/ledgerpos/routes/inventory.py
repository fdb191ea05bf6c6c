# backend/ledgerpos/routes/inventory.py
"""
Catalog and stock routes.

All writes require an acting user (X-Actor-Id). Stock is only ever changed
through the stock ledger service; a PATCH with "stock" is an absolute set
recorded as a stock_edit movement for the net change.

Responses for writes whose movement append failed after commit are still
2xx, with the gap reported under "warnings".
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..models import InventoryItem
from ..time_utils import parse_iso_date
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    ValidationError,
    enforce_rules_item,
    enforce_rules_adjustment,
)
from ..decorators import require_actor
from ..services import stock_service, import_service
from ..services.import_schemas import parse_json, parse_upload
from .errors import HANDLED_ERRORS, error_response


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

ITEM_FIELDS = {
    "name",
    "description",
    "unit",
    "batch_no",
    "stock",
    "low_stock_threshold",
    "rate",
    "mrp",
    "expiry_date",
    "tags",
}

ITEM_CREATE_POLICY = ModelValidationPolicy(
    writable_fields=ITEM_FIELDS,
    required_on_create={"name", "rate", "mrp"},
)

ITEM_UPDATE_POLICY = ModelValidationPolicy(writable_fields=ITEM_FIELDS)


def _write_response(result, status: int):
    body = {"item": result.item.to_dict()}
    if result.warnings:
        body["warnings"] = result.warnings
    return jsonify(body), status


@inventory_bp.get("")
def list_items_route():
    search = request.args.get("search")
    low_stock_only = request.args.get("low_stock", "").lower() in ("1", "true", "yes")
    items = stock_service.list_items(search=search, low_stock_only=low_stock_only)
    return jsonify({"items": [i.to_dict() for i in items]}), 200


@inventory_bp.post("")
@require_actor
def create_item_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=InventoryItem,
            payload=payload,
            policy=ITEM_CREATE_POLICY,
            partial=False,
        )
        enforce_rules_item(patch)
        result = stock_service.create_item(patch, g.actor)
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create inventory item")
        return jsonify({"error": "Internal server error"}), 500

    return _write_response(result, 201)


@inventory_bp.get("/<item_id>")
def get_item_route(item_id: str):
    try:
        item = stock_service.get_item(item_id)
    except stock_service.ItemNotFound as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"item": item.to_dict()}), 200


@inventory_bp.patch("/<item_id>")
@require_actor
def update_item_route(item_id: str):
    """
    Edit an item.

    Optional "expected_version": the version_id the editor loaded; a stale
    value is rejected with 409 instead of overwriting a concurrent change.
    """
    payload = dict(request.get_json(silent=True) or {})
    expected_version = payload.pop("expected_version", None)
    reason = payload.pop("reason", None)

    try:
        if expected_version is not None and (
            isinstance(expected_version, bool) or not isinstance(expected_version, int)
        ):
            raise ValidationError("expected_version must be an integer")
        current = stock_service.get_item(item_id)
        patch = validate_payload(
            model=InventoryItem,
            payload=payload,
            policy=ITEM_UPDATE_POLICY,
            partial=True,
        )
        enforce_rules_item(patch, current=current)
        result = stock_service.update_item(
            item_id,
            patch,
            g.actor,
            expected_version=expected_version,
            reason=reason,
        )
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update inventory item")
        return jsonify({"error": "Internal server error"}), 500

    return _write_response(result, 200)


@inventory_bp.post("/<item_id>/adjust")
@require_actor
def adjust_item_route(item_id: str):
    """
    Manual stock movement: {"type": "in"|"out", "quantity": n, "reason"?, "movement_date"?}.
    """
    payload = request.get_json(silent=True) or {}

    try:
        direction, quantity = enforce_rules_adjustment(payload.get("type"), payload.get("quantity"))
        try:
            movement_date = parse_iso_date(payload.get("movement_date"))
        except ValueError:
            raise ValidationError("movement_date must be YYYY-MM-DD")
        reason = payload.get("reason")
        if reason is not None and not isinstance(reason, str):
            raise ValidationError("reason must be a string")
        result = stock_service.adjust_stock(
            item_id,
            direction=direction,
            quantity=quantity,
            actor=g.actor,
            reason=(reason or "").strip()[:500] or None,
            movement_date=movement_date,
        )
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500

    return _write_response(result, 201)


@inventory_bp.post("/import")
@require_actor
def import_stock_route():
    """
    Bulk absolute stock import.

    Accepts a multipart "file" (.csv, .json, .xlsx) or a JSON body
    {"rows": [{"item_id": ..., "stock": ...}]}. Returns 200 when every row
    applied, 207 when some chunks or rows failed.
    """
    chunk_size = request.args.get("chunk_size", type=int)
    source_file_name = None

    try:
        if "file" in request.files:
            file = request.files["file"]
            source_file_name = file.filename or None
            parsed = parse_upload(file.filename or "", file.stream)
        else:
            parsed = parse_json(request.get_json(silent=True))
        result = import_service.import_stock_levels(
            parsed,
            g.actor,
            chunk_size=chunk_size,
            source_file_name=source_file_name,
        )
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to import stock levels")
        return jsonify({"error": "Internal server error"}), 500

    try:
        result.raise_for_failures()
    except import_service.PartialImportFailure as e:
        body = result.to_dict()
        body["error"] = str(e)
        return jsonify(body), 207
    return jsonify(result.to_dict()), 200


@inventory_bp.get("/imports/<int:batch_id>")
def get_import_route(batch_id: int):
    batch = import_service.get_import_batch(batch_id)
    if batch is None:
        return jsonify({"error": "Import batch not found"}), 404
    return jsonify({"batch": batch.to_dict()}), 200
