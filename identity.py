# identity.py — session -> g identity, shared by all blueprints.
# Sessions are issued by the auth service; we only read session["user"] = {id, email, role}.

from typing import Optional

from flask import g, session

from errors import Unauthorized


def attach_identity():
    """before_request hook: copy the signed-in user (if any) onto g."""
    u = session.get("user") or {}
    if not isinstance(u, dict) or not u.get("id"):
        return
    g.user_id = str(u["id"])
    g.user_email = (u.get("email") or "").strip().lower() or None
    g.user_role = (u.get("role") or "USER").upper()


def current_user_id() -> Optional[str]:
    return getattr(g, "user_id", None)


def require_user_id() -> str:
    uid = current_user_id()
    if not uid:
        raise Unauthorized("Unauthorized")
    return uid


def current_role() -> str:
    return (getattr(g, "user_role", None) or "USER").upper()


def is_admin() -> bool:
    return current_role() == "ADMIN"


def require_admin() -> str:
    uid = current_user_id()
    if not uid or not is_admin():
        raise Unauthorized("Unauthorized")
    return uid
