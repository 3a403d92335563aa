# Overview: Request identity decorators for API routes.

from functools import wraps

from flask import g, request

from .errors import ForbiddenError
from .extensions import db
from .models import User
from .responses import error, from_exception


USER_HEADER = "X-User-Id"
SESSION_HEADER = "X-Session-Id"


def _load_user():
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        return None
    return db.session.get(User, user_id)


def require_auth(f):
    """
    Require an authenticated caller.

    Authentication happens upstream; the auth proxy injects X-User-Id. The id
    must resolve to an existing user, so anonymized accounts are rejected.

    Sets:
    - g.current_user: the User row
    - g.session_id: None
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not request.headers.get(USER_HEADER):
            return error("Authentication required", 401)
        user = _load_user()
        if user is None:
            return error("Invalid or unknown user", 401)
        g.current_user = user
        g.session_id = None
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Require role == admin. Must be stacked under @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if getattr(g, "current_user", None) is None:
            return error("Authentication required", 401)
        if not g.current_user.is_admin:
            return from_exception(ForbiddenError("Admin access required"))
        return f(*args, **kwargs)

    return decorated_function


def optional_auth(f):
    """
    Allow either a signed-in user or a guest session.

    Guests identify their cart with X-Session-Id. A request carrying neither
    header is rejected; a user id that does not resolve is rejected rather than
    silently downgraded to a guest.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = None
        g.session_id = None
        if request.headers.get(USER_HEADER):
            user = _load_user()
            if user is None:
                return error("Invalid or unknown user", 401)
            g.current_user = user
        else:
            session_id = (request.headers.get(SESSION_HEADER) or "").strip()
            if not session_id:
                return error("Sign in or provide a guest session id", 401)
            g.session_id = session_id
        return f(*args, **kwargs)

    return decorated_function


def cart_owner() -> dict:
    """Keyword arguments identifying the caller's cart for cart_service."""
    if g.current_user is not None:
        return {"user_id": g.current_user.id}
    return {"session_id": g.session_id}
