# exam.py
# -----------------------------------------------------------------------------
# Course exam API (JSON only).
# - Learners: list, view, start/resume, submit
# - Course owner / admin: create, update (settings + question replace), delete, analytics
# - start/submit are rate-limited per user
# -----------------------------------------------------------------------------

import random
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, jsonify, request

import exam_engine
from errors import NotFound, RateLimited
from exam_analytics import exam_analytics
from identity import current_role, require_user_id


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at <base_path>/courses/<course_id>/exam.
    Required deps: store, now
    Optional deps: rng (random.Random), rate_limiter (RateLimiter)
    """
    url_prefix = base_path.rstrip("/") + "/courses/<course_id>/exam"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- deps ----------------------------------------------------------------
    store = deps["store"]
    now: Callable[[], datetime] = deps["now"]
    rng: Optional[random.Random] = deps.get("rng")
    limiter = deps.get("rate_limiter")

    def _throttle(action: str, user_id: str):
        if limiter is not None and not limiter.allow(f"exam-{action}:{user_id}"):
            raise RateLimited("Too many requests. Please slow down.")

    # ------------------------------- listing / authoring ----------------------
    @bp.get("")
    def list_exams(course_id: str):
        uid = require_user_id()
        return jsonify(exam_engine.exam_list(store, course_id, uid, current_role()))

    @bp.post("")
    def create_exam(course_id: str):
        uid = require_user_id()
        exam_engine.require_owner(store, course_id, uid, current_role())
        data = request.get_json(silent=True) or {}
        exam = exam_engine.create_exam(store, course_id, data, now())
        return jsonify({"success": True, "exam": exam_engine.exam_json(exam)}), 201

    @bp.get("/<exam_id>")
    def get_exam(course_id: str, exam_id: str):
        uid = require_user_id()
        return jsonify(exam_engine.exam_view(store, course_id, exam_id, uid, current_role(), now()))

    @bp.put("/<exam_id>")
    def update_exam(course_id: str, exam_id: str):
        uid = require_user_id()
        exam_engine.require_owner(store, course_id, uid, current_role())
        data = request.get_json(silent=True) or {}
        exam = exam_engine.update_exam(store, course_id, exam_id, data)
        return jsonify({"success": True, "exam": exam_engine.exam_json(exam)})

    @bp.delete("/<exam_id>")
    def delete_exam(course_id: str, exam_id: str):
        uid = require_user_id()
        exam_engine.require_owner(store, course_id, uid, current_role())
        exam_engine.delete_exam(store, course_id, exam_id)
        return jsonify({"success": True})

    # ------------------------------- attempts ---------------------------------
    @bp.post("/<exam_id>/start")
    def start(course_id: str, exam_id: str):
        uid = require_user_id()
        _throttle("start", uid)
        return jsonify(exam_engine.start_attempt(store, course_id, exam_id, uid, now(), rng))

    @bp.post("/<exam_id>/submit")
    def submit(course_id: str, exam_id: str):
        uid = require_user_id()
        _throttle("submit", uid)
        data = request.get_json(silent=True) or {}
        results = exam_engine.submit_attempt(
            store, course_id, exam_id,
            data.get("attemptId"), uid,
            data.get("answers") or {}, data.get("timeSpent"), now(),
        )
        return jsonify({
            "success": True,
            "results": results,
            "message": exam_engine.result_message(results["passed"]),
        })

    # ------------------------------- analytics --------------------------------
    @bp.get("/<exam_id>/analytics")
    def analytics(course_id: str, exam_id: str):
        uid = require_user_id()
        exam_engine.require_owner(store, course_id, uid, current_role())
        exam = store.get_exam(course_id, exam_id)
        if not exam:
            raise NotFound("Exam not found")
        return jsonify(exam_analytics(store, exam, now()))

    return bp
