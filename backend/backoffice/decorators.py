# Overview: Request decorators for API routes.

from functools import wraps

from flask import g, jsonify, request


ACTOR_HEADER = "X-Actor-Id"


def require_actor(f):
    """
    Require the caller to identify who performs the action.

    Authentication and permission checks happen upstream (gateway / POS
    session layer); this service trusts the caller and only records the actor
    on every movement it writes.

    Sets g.actor_id (str). Returns 401 when the header is missing or blank.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not actor:
            return jsonify({"error": f"{ACTOR_HEADER} header required"}), 401
        g.actor_id = actor[:64]
        return f(*args, **kwargs)

    return decorated_function
