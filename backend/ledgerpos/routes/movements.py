# Overview: Flask API routes for the movement log; day-window history and admin clear.

from flask import Blueprint, request, jsonify, g, current_app

from ..time_utils import parse_iso_date
from ..decorators import require_actor, require_role
from ..services import history_service, movement_service
from ..services.actor import ROLE_ADMIN
from ..validation import ValidationError

movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")


@movements_bp.get("")
def movement_history_route():
    """
    Movement history, newest day first.

    ?before=YYYY-MM-DD (inclusive, default today) &days=N. Load the next
    window with before=<next_before from the previous response>.
    """
    days = request.args.get("days", type=int) or current_app.config["MOVEMENT_HISTORY_DAYS"]
    days = max(1, min(days, 366))

    try:
        try:
            before = parse_iso_date(request.args.get("before"))
        except ValueError:
            raise ValidationError("before must be YYYY-MM-DD")
        page = history_service.load_movement_history(
            before=before,
            days=days,
            item_id=request.args.get("item_id") or None,
            source=request.args.get("source") or None,
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify(page.to_dict()), 200


@movements_bp.delete("")
@require_actor
@require_role(ROLE_ADMIN)
def clear_movements_route():
    """Delete the entire movement log. Irreversible."""
    if request.args.get("confirm") != "yes":
        return jsonify({"error": "Pass confirm=yes to clear the movement log"}), 400

    try:
        result = movement_service.clear_all(g.actor)
    except movement_service.PermissionDenied as e:
        return jsonify({"error": "Permission denied", "message": str(e)}), 403
    except Exception:
        current_app.logger.exception("Failed to clear movement log")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result), 200
