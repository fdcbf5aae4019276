from datetime import datetime
from typing import Any, Callable, Dict

from flask import Blueprint, jsonify, request

from enrollment import enrollment_json, review_enrollment
from identity import require_admin
from premium import request_json, review_premium_request, toggle_premium, user_entitlement_json


# =========================
# Blueprint factory
# =========================
def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Admin API, including:
      • Enrollment review (APPROVED / REJECTED)
      • Premium request review (plan activation + user notification)
      • Manual premium toggle
    deps:
      - store: record store (store.PgStore or a fake)
      - now() -> aware datetime
    Every route requires role ADMIN; anything else gets 401.
    """
    store = deps["store"]
    now: Callable[[], datetime] = deps["now"]

    # Mount at /<BASE_PATH>/api/admin or /admin if url_prefix=""
    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    @bp.before_request
    def _admin_only():
        require_admin()

    # ---------- Enrollments ----------
    @bp.get("/enrollments")
    def list_enrollments():
        return jsonify([enrollment_json(r) for r in store.list_enrollments()])

    @bp.put("/enrollments")
    def review_enrollment_route():
        data = request.get_json(silent=True) or {}
        row = review_enrollment(store, data.get("id"), data.get("status"))
        return jsonify(enrollment_json(row))

    # ---------- Premium requests ----------
    @bp.get("/premium-requests")
    def list_premium_requests():
        return jsonify([request_json(r) for r in store.list_premium_requests()])

    @bp.put("/premium-requests")
    def review_premium_request_route():
        data = request.get_json(silent=True) or {}
        row = review_premium_request(
            store, data.get("id"), data.get("status"), data.get("durationDays"), now()
        )
        return jsonify({"success": True, "request": request_json(row)})

    # ---------- Manual premium toggle ----------
    @bp.post("/toggle-premium")
    def toggle_premium_route():
        data = request.get_json(silent=True) or {}
        user = toggle_premium(store, data.get("userId"), data.get("isPremium"), data.get("durationDays"), now())
        return jsonify({"success": True, "user": user_entitlement_json(user)})

    return bp
