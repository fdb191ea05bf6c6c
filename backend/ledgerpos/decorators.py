# Overview: Request identity and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services.actor import Actor, ROLE_ADMIN, ROLE_STAFF

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_NAME_HEADER = "X-Actor-Name"
ACTOR_ROLE_HEADER = "X-Actor-Role"

KNOWN_ROLES = {ROLE_ADMIN, ROLE_STAFF}


def require_actor(f):
    """
    Require an acting user supplied by the upstream identity provider.

    Sets g.actor (services.actor.Actor). The backend does not verify these
    headers; it trusts the gateway in front of it and records what it is given.

    Returns 401 if X-Actor-Id is missing or blank.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
        if not user_id:
            return jsonify({"error": "Acting user required"}), 401

        display_name = (request.headers.get(ACTOR_NAME_HEADER) or "").strip() or "Unknown User"
        role = (request.headers.get(ACTOR_ROLE_HEADER) or ROLE_STAFF).strip().lower()
        if role not in KNOWN_ROLES:
            role = ROLE_STAFF

        g.actor = Actor(user_id=user_id[:128], display_name=display_name[:255], role=role)
        return f(*args, **kwargs)

    return decorated_function


def require_role(role: str):
    """
    Require a role on the acting user. Use after @require_actor.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return jsonify({"error": "Acting user required"}), 401
            if actor.role != role:
                return jsonify({
                    "error": "Permission denied",
                    "required_role": role,
                }), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator
