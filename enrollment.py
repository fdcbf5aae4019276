# enrollment.py
# -----------------------------------------------------------------------------
# Enrollment gate + enrollment requests.
# - can_attempt(): (allowed, reason); APPROVED is the only status that opens exams
# - POST /courses/enroll creates a PENDING request (unique per course/user)
# - review_enrollment(): admin decision, APPROVED / REJECTED only
# -----------------------------------------------------------------------------

from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, jsonify, request

from errors import Conflict, NotFound, ValidationError
from identity import require_user_id
from store import new_id

REVIEW_STATUSES = ("APPROVED", "REJECTED")


def can_attempt(store, user_id: str, course_id: str) -> Tuple[bool, str]:
    """
    Gate for exam attempts.
    Returns (allowed, reason) where reason is one of: 'approved', 'not enrolled', 'enrollment not approved'.
    """
    row = store.get_enrollment(course_id, user_id)
    if not row:
        return False, "not enrolled"
    if (row.get("status") or "").upper() != "APPROVED":
        return False, "enrollment not approved"
    return True, "approved"


def request_enrollment(store, user_id: str, data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    course_id = (str(data.get("courseId") or "")).strip()
    phone = (str(data.get("paymentPhone") or "")).strip()
    screenshot = (str(data.get("paymentScreenshot") or "")).strip()
    if not course_id or not phone or not screenshot:
        raise ValidationError("Missing required fields")
    if not store.get_course(course_id):
        raise NotFound("Course not found")

    row = store.create_enrollment({
        "id": new_id(),
        "course_id": course_id,
        "user_id": user_id,
        "status": "PENDING",
        "payment_phone": phone,
        "payment_screenshot_url": screenshot,
        "created_at": now,
    })
    if row is None:
        raise Conflict("Already enrolled in this course", code="AlreadyEnrolled")
    print(f"[enroll] request {row['id']} user={user_id} course={course_id}", flush=True)
    return row


def review_enrollment(store, enrollment_id: Optional[str], status: Optional[str]) -> Dict[str, Any]:
    status = (status or "").strip().upper()
    if not enrollment_id or status not in REVIEW_STATUSES:
        raise ValidationError("Invalid status")
    row = store.set_enrollment_status(enrollment_id, status)
    if not row:
        raise NotFound("Enrollment not found")
    print(f"[enroll] {enrollment_id} -> {status}", flush=True)
    return row


def enrollment_json(row: Dict[str, Any]) -> Dict[str, Any]:
    out = {
        "id": row["id"],
        "courseId": row["course_id"],
        "userId": row["user_id"],
        "status": row["status"],
        "finalScore": row.get("final_score"),
        "paymentPhone": row.get("payment_phone"),
        "paymentScreenshot": row.get("payment_screenshot_url"),
        "createdAt": _iso(row.get("created_at")),
    }
    if "user_email" in row:
        out["user"] = {"name": row.get("user_name"), "email": row.get("user_email")}
    if "course_title" in row:
        out["course"] = {"title": row.get("course_title")}
    return out


def _iso(ts) -> Optional[str]:
    return ts.isoformat() if isinstance(ts, datetime) else ts


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_enrollment_blueprint(base_path: str, deps: Dict[str, Any], name: str = "enrollment") -> Blueprint:
    """
    Mounted at <base_path>/courses.
    deps: store, now() -> aware datetime
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path.rstrip("/") + "/courses"))
    store = deps["store"]
    now: Callable[[], datetime] = deps["now"]

    @bp.post("/enroll")
    def enroll():
        uid = require_user_id()
        data = request.get_json(silent=True) or {}
        row = request_enrollment(store, uid, data, now())
        return jsonify({"success": True, "enrollment": enrollment_json(row)}), 201

    return bp
