# premium.py
# -----------------------------------------------------------------------------
# Entitlement engine: plan type -> user mutations (a lookup table, not a state machine).
# - 15_UPLOADS increments limits in SQL (no read-modify-write)
# - day plans grant premium + verified and lift limits
# - review_premium_request(): APPROVED applies the plan once per request
# -----------------------------------------------------------------------------

import os
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, jsonify, request

from errors import Conflict, NotFound, ValidationError
from identity import require_user_id
from store import new_id

UNLIMITED = int(os.getenv("PREMIUM_UNLIMITED_LIMIT") or 1000)
DEFAULT_DURATION_DAYS = 30

# plan -> (days, premium, limit rule)
PLANS: Dict[str, Dict[str, Any]] = {
    "15_UPLOADS": {"days": 30, "premium": False, "increment": 15},
    "7_DAYS": {"days": 7, "premium": True, "set_limit": UNLIMITED},
    "30_DAYS": {"days": 30, "premium": True, "set_limit": UNLIMITED},
    "75_DAYS": {"days": 75, "premium": True, "set_limit": UNLIMITED},
    "6_MONTHS": {"days": 180, "premium": True, "set_limit": UNLIMITED},
}

REVIEW_STATUSES = ("APPROVED", "REJECTED")


def _duration(duration_days: Any) -> int:
    if duration_days in (None, ""):
        return DEFAULT_DURATION_DAYS
    if isinstance(duration_days, bool):
        raise ValidationError("durationDays must be a positive integer")
    try:
        days = int(duration_days)
    except (TypeError, ValueError):
        raise ValidationError("durationDays must be a positive integer") from None
    if days < 1:
        raise ValidationError("durationDays must be a positive integer")
    return days


def plan_changes(plan_type: str, now: datetime, duration_days: Any = None) -> Dict[str, Dict[str, Any]]:
    """Pure: returns {"set": {...}, "increment": {...}} for store.apply_entitlement."""
    plan = PLANS.get((plan_type or "").upper())
    if plan is None:
        return {
            "set": {
                "is_premium": True,
                "is_verified": True,
                "premium_expires_at": now + timedelta(days=_duration(duration_days)),
            },
            "increment": {},
        }

    sets: Dict[str, Any] = {"premium_expires_at": now + timedelta(days=plan["days"])}
    inc: Dict[str, int] = {}
    if plan["premium"]:
        sets.update({"is_premium": True, "is_verified": True})
    if "set_limit" in plan:
        sets.update({"job_limit": plan["set_limit"], "talent_limit": plan["set_limit"]})
    if "increment" in plan:
        inc = {"job_limit": plan["increment"], "talent_limit": plan["increment"]}
    return {"set": sets, "increment": inc}


def activate_plan(store, user_id: str, plan_type: str, now: datetime,
                  duration_days: Any = None) -> Dict[str, Any]:
    user = store.apply_entitlement(user_id, plan_changes(plan_type, now, duration_days))
    if user is None:
        raise NotFound("User not found")
    print(f"[premium] plan {plan_type} applied to user={user_id}", flush=True)
    return user


def review_premium_request(store, request_id: Optional[str], status: Optional[str],
                           duration_days: Any, now: datetime) -> Dict[str, Any]:
    status = (status or "").strip().upper()
    if not request_id or status not in REVIEW_STATUSES:
        raise ValidationError("Invalid request")

    with store.transaction() as tx:
        current = tx.get_premium_request(request_id)
        if not current:
            raise NotFound("Premium request not found")
        row = tx.set_premium_request_status(request_id, status)
        if row is None:
            raise Conflict("Premium request was already approved", code="AlreadyApproved")

        if status == "APPROVED":
            activate_plan(tx, row["user_id"], row["plan_type"], now, duration_days)
            tx.create_notification(
                row["user_id"],
                f"Your Premium Request for {row['plan_type']} has been APPROVED!",
                "/profile", now,
            )
        else:
            tx.create_notification(
                row["user_id"],
                f"Your Premium Request for {row['plan_type']} was rejected. Please contact support.",
                "/premium", now,
            )
    print(f"[premium] request {request_id} -> {status}", flush=True)
    return row


def toggle_premium(store, user_id: Optional[str], is_premium: Any, duration_days: Any,
                   now: datetime) -> Dict[str, Any]:
    if not user_id or not isinstance(is_premium, bool):
        raise ValidationError("userId and isPremium are required")
    sets: Dict[str, Any] = {"is_premium": is_premium}
    if is_premium:
        if duration_days not in (None, ""):
            sets["premium_expires_at"] = now + timedelta(days=_duration(duration_days))
            sets["is_verified"] = True
    else:
        sets["premium_expires_at"] = None
    user = store.apply_entitlement(user_id, {"set": sets, "increment": {}})
    if user is None:
        raise NotFound("User not found")
    print(f"[premium] toggle user={user_id} premium={is_premium}", flush=True)
    return user


def request_json(r: Dict[str, Any]) -> Dict[str, Any]:
    ts = r.get("created_at")
    out = {
        "id": r["id"],
        "userId": r["user_id"],
        "planType": r["plan_type"],
        "amount": r.get("amount"),
        "screenshotUrl": r.get("screenshot_url"),
        "phoneNumber": r.get("phone_number"),
        "status": r["status"],
        "createdAt": ts.isoformat() if isinstance(ts, datetime) else ts,
    }
    if "user_email" in r:
        out["user"] = {"name": r.get("user_name"), "email": r.get("user_email")}
    return out


def user_entitlement_json(u: Dict[str, Any]) -> Dict[str, Any]:
    exp = u.get("premium_expires_at")
    return {
        "id": u["id"],
        "isPremium": u.get("is_premium"),
        "isVerified": u.get("is_verified"),
        "premiumExpiresAt": exp.isoformat() if isinstance(exp, datetime) else exp,
        "jobLimit": u.get("job_limit"),
        "talentLimit": u.get("talent_limit"),
    }


# -----------------------------------------------------------------------------
# Blueprint factory (user side; admin review lives in admin.py)
# -----------------------------------------------------------------------------
def create_premium_blueprint(base_path: str, deps: Dict[str, Any], name: str = "premium") -> Blueprint:
    """deps: store, now"""
    bp = Blueprint(name, __name__, url_prefix=(base_path.rstrip("/") + "/premium"))
    store = deps["store"]
    now: Callable[[], datetime] = deps["now"]

    @bp.post("/request")
    def submit_request():
        uid = require_user_id()
        data = request.get_json(silent=True) or {}
        plan_type = (str(data.get("planType") or "")).strip().upper()
        screenshot = (str(data.get("screenshotUrl") or "")).strip()
        phone = (str(data.get("phoneNumber") or "")).strip()
        amount = data.get("amount")
        if not plan_type or not screenshot or not phone or amount in (None, ""):
            raise ValidationError("Missing required fields")
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("amount must be a number") from None

        row = store.create_premium_request({
            "id": new_id(),
            "user_id": uid,
            "plan_type": plan_type,
            "amount": amount,
            "screenshot_url": screenshot,
            "phone_number": phone,
            "created_at": now(),
        })
        print(f"[premium] request {row['id']} user={uid} plan={plan_type}", flush=True)
        return jsonify({"success": True, "request": request_json(row)}), 201

    return bp
