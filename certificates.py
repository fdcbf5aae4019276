# certificates.py
# -----------------------------------------------------------------------------
# Certificate issuance (idempotent per user+course) + lookup/validation routes.
# -----------------------------------------------------------------------------

import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, jsonify, request

from errors import NotFound, RateLimited, ValidationError
from identity import require_user_id
from store import new_id

_CERT_PREFIX = re.compile(r"^cert-", re.IGNORECASE)


def certificate_url(certificate_id: str) -> str:
    return f"/certificate/{certificate_id}"


def issue_certificate(store, user_id: str, course_id: str, score: float,
                      now: datetime) -> Tuple[Dict[str, Any], bool]:
    """
    Returns (certificate, created). The unique (user_id, course_id) constraint
    decides the winner; a loser reads back the existing row.
    """
    cid = new_id()
    row = store.insert_certificate({
        "id": cid,
        "user_id": user_id,
        "course_id": course_id,
        "score": score,
        "issued_at": now,
        "certificate_url": certificate_url(cid),
    })
    if row is not None:
        print(f"[cert] issued {cid} user={user_id} course={course_id}", flush=True)
        return row, True
    existing = store.get_certificate_for(user_id, course_id)
    if existing is None:
        # conflict row vanished between statements
        raise RuntimeError(f"certificate for {user_id}/{course_id} neither inserted nor found")
    return existing, False


def normalize_certificate_id(raw: Optional[str]) -> str:
    return _CERT_PREFIX.sub("", (raw or "").strip()).strip()


def _iso(ts) -> Optional[str]:
    return ts.isoformat() if isinstance(ts, datetime) else ts


def validate_certificate(store, raw_id: Optional[str]) -> Dict[str, Any]:
    cid = normalize_certificate_id(raw_id)
    if not cid:
        raise ValidationError("Certificate ID is required", extra={"valid": False, "message": "Certificate ID is required"})
    row = store.get_certificate(cid)
    if not row:
        return {"valid": False, "message": "Certificate not found"}
    return {
        "valid": True,
        "certificate": {
            "id": row["id"],
            "holderName": row.get("holder_name") or "Anonymous",
            "courseTitle": row.get("course_title"),
            "score": row.get("score"),
            "issuedAt": _iso(row.get("issued_at")),
        },
    }


def generate_for_completed(store, user_id: str, course_id: Optional[str],
                           now: datetime) -> Dict[str, Any]:
    if not course_id:
        raise ValidationError("Course ID is required")
    enrollment = store.get_enrollment(course_id, user_id)
    if not enrollment or enrollment.get("status") != "COMPLETED":
        raise ValidationError("Course not completed")
    score = enrollment.get("final_score") or 100
    cert, _ = issue_certificate(store, user_id, course_id, score, now)
    return cert


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_certificates_blueprint(base_path: str, deps: Dict[str, Any],
                                  name: str = "certificates") -> Blueprint:
    """deps: store, now, rate_limiter (optional)"""
    bp = Blueprint(name, __name__, url_prefix=(base_path.rstrip("/") + "/certificates"))
    store = deps["store"]
    now: Callable[[], datetime] = deps["now"]
    limiter = deps.get("rate_limiter")

    @bp.get("")
    def list_mine():
        uid = require_user_id()
        rows = store.list_certificates(uid)
        return jsonify([{
            "id": r["id"],
            "courseId": r["course_id"],
            "score": r.get("score"),
            "issuedAt": _iso(r.get("issued_at")),
            "certificateUrl": r.get("certificate_url"),
            "course": {"title": r.get("course_title"), "instructor": r.get("course_instructor")},
        } for r in rows])

    @bp.get("/validate")
    def validate():
        if limiter is not None and not limiter.allow(f"cert-validate:{request.remote_addr or 'unknown'}"):
            raise RateLimited("Too many requests")
        return jsonify(validate_certificate(store, request.args.get("id")))

    @bp.post("/generate")
    def generate():
        uid = require_user_id()
        data = request.get_json(silent=True) or {}
        course_id = (str(data.get("courseId") or "")).strip()
        if course_id and not store.get_course(course_id):
            raise NotFound("Course not found")
        with store.transaction() as tx:
            cert = generate_for_completed(tx, uid, course_id, now())
        return jsonify({"certificateId": cert["id"], "certificateUrl": cert.get("certificate_url")})

    return bp
