# Overview: Shared mapping from service exceptions to JSON error responses.

from flask import jsonify

from ..services.bill_service import BillNotFound
from ..services.concurrency import ConcurrencyConflict
from ..services.movement_service import PermissionDenied
from ..services.stock_service import ItemNotFound, StockInsufficient
from ..validation import ConflictError, ValidationError

HANDLED_ERRORS = (
    ItemNotFound,
    BillNotFound,
    PermissionDenied,
    ConflictError,
    ValidationError,
)


def error_response(e: Exception):
    # StockInsufficient and ConcurrencyConflict are ConflictErrors; check them first
    if isinstance(e, (ItemNotFound, BillNotFound)):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, PermissionDenied):
        return jsonify({"error": "Permission denied", "message": str(e)}), 403
    if isinstance(e, ConcurrencyConflict):
        return jsonify({"error": str(e), "details": e.details, "retryable": True}), 409
    if isinstance(e, StockInsufficient):
        return jsonify({"error": str(e), "code": "STOCK_INSUFFICIENT", "details": e.details}), 409
    if isinstance(e, ConflictError):
        return jsonify({"error": str(e), "details": e.details}), 409
    return jsonify({"error": str(e)}), 400
