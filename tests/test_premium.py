import sys
from datetime import timedelta
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from admin import create_admin_blueprint  # noqa: E402
from errors import Conflict, ValidationError  # noqa: E402
from fakes import T0  # noqa: E402
from premium import (  # noqa: E402
    UNLIMITED, create_premium_blueprint, plan_changes, review_premium_request,
)

ADMIN = {"id": "admin", "role": "ADMIN"}


def _request(store, plan, user="learner", rid="r1"):
    return store.create_premium_request({
        "id": rid, "user_id": user, "plan_type": plan, "amount": 500.0,
        "screenshot_url": "pay.png", "phone_number": "9800000000", "created_at": T0,
    })


@pytest.mark.parametrize("plan,days", [("7_DAYS", 7), ("30_DAYS", 30), ("75_DAYS", 75), ("6_MONTHS", 180)])
def test_day_plans_grant_premium(plan, days):
    changes = plan_changes(plan, T0)
    assert changes["increment"] == {}
    assert changes["set"] == {
        "is_premium": True,
        "is_verified": True,
        "job_limit": UNLIMITED,
        "talent_limit": UNLIMITED,
        "premium_expires_at": T0 + timedelta(days=days),
    }


def test_upload_pack_increments_without_premium():
    changes = plan_changes("15_UPLOADS", T0)
    assert changes["increment"] == {"job_limit": 15, "talent_limit": 15}
    assert changes["set"] == {"premium_expires_at": T0 + timedelta(days=30)}


def test_unknown_plan_uses_duration():
    assert plan_changes("CUSTOM", T0)["set"]["premium_expires_at"] == T0 + timedelta(days=30)
    changes = plan_changes("CUSTOM", T0, "10")
    assert changes["set"]["premium_expires_at"] == T0 + timedelta(days=10)
    assert changes["set"]["is_premium"] is True
    assert "job_limit" not in changes["set"]
    with pytest.raises(ValidationError):
        plan_changes("CUSTOM", T0, -3)


def test_approve_seven_days(store, clock):
    _request(store, "7_DAYS")
    review_premium_request(store, "r1", "APPROVED", None, clock())
    user = store.get_user("learner")
    assert user["is_premium"] is True
    assert user["is_verified"] is True
    assert user["job_limit"] == 1000
    assert user["talent_limit"] == 1000
    assert user["premium_expires_at"] == clock() + timedelta(days=7)
    notes = store.rows("notifications")
    assert len(notes) == 1
    assert notes[0]["content"] == "Your Premium Request for 7_DAYS has been APPROVED!"
    assert notes[0]["link"] == "/profile"


def test_upload_packs_stack_across_requests_but_not_reapproval(store, clock):
    store.t["users"]["learner"]["job_limit"] = 5
    _request(store, "15_UPLOADS", rid="r1")
    _request(store, "15_UPLOADS", rid="r2")
    review_premium_request(store, "r1", "APPROVED", None, clock())
    review_premium_request(store, "r2", "APPROVED", None, clock())
    with pytest.raises(Conflict):
        review_premium_request(store, "r1", "APPROVED", None, clock())
    user = store.get_user("learner")
    assert user["job_limit"] == 35
    assert user["talent_limit"] == 30
    assert user["is_premium"] is False


def test_reject_only_notifies(store, clock):
    _request(store, "30_DAYS")
    review_premium_request(store, "r1", "REJECTED", None, clock())
    user = store.get_user("learner")
    assert user["is_premium"] is False
    assert user["job_limit"] == 0
    assert store.get_premium_request("r1")["status"] == "REJECTED"
    note = store.rows("notifications")[0]
    assert note["content"] == "Your Premium Request for 30_DAYS was rejected. Please contact support."
    assert note["link"] == "/premium"


def test_admin_routes(store, clock, make_app):
    _request(store, "6_MONTHS")
    app, who = make_app(create_admin_blueprint, who=ADMIN)
    client = app.test_client()

    listed = client.get("/api/admin/premium-requests").get_json()
    assert listed[0]["user"]["email"] == "learner@example.com"

    resp = client.put("/api/admin/premium-requests", json={"id": "r1", "status": "APPROVED"})
    assert resp.status_code == 200
    assert resp.get_json()["request"]["status"] == "APPROVED"
    assert store.get_user("learner")["premium_expires_at"] == clock() + timedelta(days=180)

    assert client.put("/api/admin/premium-requests", json={"id": "r1", "status": "MAYBE"}).status_code == 400
    assert client.put("/api/admin/premium-requests", json={"id": "zz", "status": "APPROVED"}).status_code == 404

    who.update({"id": "learner", "role": "USER"})
    assert client.get("/api/admin/premium-requests").status_code == 401


def test_toggle_premium(store, clock, make_app):
    app, _ = make_app(create_admin_blueprint, who=ADMIN)
    client = app.test_client()
    on = client.post("/api/admin/toggle-premium", json={"userId": "learner", "isPremium": True, "durationDays": 14})
    assert on.status_code == 200
    user = store.get_user("learner")
    assert user["is_premium"] is True
    assert user["is_verified"] is True
    assert user["premium_expires_at"] == clock() + timedelta(days=14)

    off = client.post("/api/admin/toggle-premium", json={"userId": "learner", "isPremium": False})
    assert off.get_json()["user"]["isPremium"] is False
    assert store.get_user("learner")["premium_expires_at"] is None

    assert client.post("/api/admin/toggle-premium", json={"isPremium": True}).status_code == 400
    assert client.post("/api/admin/toggle-premium",
                       json={"userId": "ghost", "isPremium": True}).status_code == 404


def test_user_submits_request(store, make_app):
    app, _ = make_app(create_premium_blueprint)
    client = app.test_client()
    ok = client.post("/api/premium/request", json={
        "planType": "30_days", "amount": "999", "screenshotUrl": "s.png", "phoneNumber": "98",
    })
    assert ok.status_code == 201
    assert ok.get_json()["request"]["planType"] == "30_DAYS"
    assert store.rows("premium_requests")[0]["status"] == "PENDING"
    assert client.post("/api/premium/request", json={"planType": "7_DAYS"}).status_code == 400
