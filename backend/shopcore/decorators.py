# Overview: Actor-context decorators for API routes.

from functools import wraps

from flask import g, jsonify, request

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ADMIN_HEADER = "X-Actor-Admin"


def _load_actor() -> bool:
    """
    Copy the gateway-authenticated actor onto flask.g.

    Authentication happens upstream; this only parses what the gateway
    forwarded. Returns False when the actor id is missing or malformed.
    """
    raw_id = request.headers.get(ACTOR_ID_HEADER, "").strip()
    if not raw_id.isdigit():
        return False
    g.actor_id = int(raw_id)
    g.is_admin = request.headers.get(ACTOR_ADMIN_HEADER, "").strip().lower() in {"1", "true", "yes"}
    return True


def optional_actor(f):
    """Guest-friendly routes: g.actor_id is None when no actor was forwarded."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _load_actor():
            g.actor_id = None
            g.is_admin = False
        return f(*args, **kwargs)
    return decorated_function


def require_actor(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _load_actor():
            return jsonify({"error": "Authentication required"}), 401
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """
    Require an authenticated actor with administrative capability.

    Returns 401 without an actor and 403 for non-admins.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _load_actor():
            return jsonify({"error": "Authentication required"}), 401
        if not g.is_admin:
            return jsonify({"error": "Administrative capability required"}), 403
        return f(*args, **kwargs)
    return decorated_function
