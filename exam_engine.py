# exam_engine.py
# -----------------------------------------------------------------------------
# Attempt lifecycle (start / resume / submit), exam read model, exam authoring.
# - Gate: APPROVED enrollment, published+active exam, inside availability window
# - Start: resume the IN_PROGRESS attempt, else AlreadyPassed / AttemptLimitReached,
#   else insert attempt N+1 (unique index decides concurrent starts)
# - Submit: one transaction (answers + terminal attempt row + certificate)
# -----------------------------------------------------------------------------

import os
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from certificates import issue_certificate
from enrollment import can_attempt
from errors import Conflict, Forbidden, NotFound, ValidationError
from exam_state import (
    AttemptEvent, AttemptStatus, IllegalTransition, TERMINAL,
    elapsed_seconds, next_status, remaining_seconds, submission_event, transition,
)
from grading import (
    DIFFICULTIES, QUESTION_TYPES, deliver_questions, full_question, grade,
    json_list, max_points, project_question,
)
from store import new_id

PIN_QUESTION_ORDER = os.getenv("EXAM_PIN_QUESTION_ORDER", "0").lower() in ("1", "true", "yes")

# Upper bounds for owner-supplied integers (columns are INTEGER).
MAX_TIME_LIMIT_MIN = 24 * 60
MAX_ATTEMPTS_CAP = 100
MAX_QUESTION_POINTS = 1000

PASS_MESSAGE = "Congratulations! You passed the exam!"
FAIL_MESSAGE = "You did not pass. Please review and try again."

EXAM_DEFAULTS = {
    "passing_score": 70,
    "time_limit": 60,
    "max_attempts": 3,
    "shuffle_questions": True,
    "shuffle_options": True,
    "show_results": True,
    "is_published": False,
    "is_active": True,
}

# camelCase request field -> column
_EXAM_INPUT = {
    "title": "title",
    "description": "description",
    "passingScore": "passing_score",
    "timeLimit": "time_limit",
    "maxAttempts": "max_attempts",
    "shuffleQuestions": "shuffle_questions",
    "shuffleOptions": "shuffle_options",
    "showResults": "show_results",
    "isPublished": "is_published",
    "isActive": "is_active",
    "availableFrom": "available_from",
    "availableUntil": "available_until",
}
_BOOL_COLS = ("shuffle_questions", "shuffle_options", "show_results", "is_published", "is_active")
_TS_COLS = ("available_from", "available_until")


# =============================================================================
# small helpers
# =============================================================================
def _iso(ts) -> Optional[str]:
    return ts.isoformat() if isinstance(ts, datetime) else ts


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _parse_ts(value: Any, field: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return _aware(value)
    try:
        return _aware(datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp") from None


def _int_in(value: Any, field: str, lo: int, hi: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer") from None
    if n < lo or (hi is not None and n > hi):
        rng = f"between {lo} and {hi}" if hi is not None else f">= {lo}"
        raise ValidationError(f"{field} must be {rng}")
    return n


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


def attempt_json(a: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not a:
        return None
    return {
        "id": a["id"],
        "examId": a["exam_id"],
        "userId": a["user_id"],
        "attemptNumber": a["attempt_number"],
        "status": a["status"],
        "startedAt": _iso(a.get("started_at")),
        "submittedAt": _iso(a.get("submitted_at")),
        "score": a.get("score"),
        "totalPoints": a.get("total_points"),
        "maxPoints": a.get("max_points"),
        "passed": a.get("passed"),
        "timeSpent": a.get("time_spent"),
        "certificateId": a.get("certificate_id"),
    }


def exam_json(e: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": e["id"],
        "courseId": e["course_id"],
        "title": e.get("title"),
        "description": e.get("description"),
        "passingScore": e.get("passing_score"),
        "timeLimit": e.get("time_limit"),
        "maxAttempts": e.get("max_attempts"),
        "shuffleQuestions": e.get("shuffle_questions"),
        "shuffleOptions": e.get("shuffle_options"),
        "showResults": e.get("show_results"),
        "isPublished": e.get("is_published"),
        "isActive": e.get("is_active"),
        "availableFrom": _iso(e.get("available_from")),
        "availableUntil": _iso(e.get("available_until")),
        "createdAt": _iso(e.get("created_at")),
    }


# =============================================================================
# access checks
# =============================================================================
def check_available(exam: Dict[str, Any], now: datetime) -> None:
    if not (exam.get("is_published") and exam.get("is_active")):
        raise Forbidden("Exam is not available")
    start = _aware(exam.get("available_from"))
    end = _aware(exam.get("available_until"))
    if start and now < start:
        raise Forbidden("Exam is not yet available")
    if end and now > end:
        raise Forbidden("Exam availability period has ended")


def is_course_owner(course: Dict[str, Any], user_id: Optional[str], role: str) -> bool:
    return (role or "").upper() == "ADMIN" or (bool(user_id) and course.get("teacher_id") == user_id)


def require_owner(store, course_id: str, user_id: str, role: str) -> Dict[str, Any]:
    course = store.get_course(course_id)
    if not course:
        raise NotFound("Course not found")
    if not is_course_owner(course, user_id, role):
        raise Forbidden("Not authorized")
    return course


def _load_exam(store, course_id: str, exam_id: str) -> Dict[str, Any]:
    exam = store.get_exam(course_id, exam_id)
    if not exam:
        raise NotFound("Exam not found")
    return exam


# =============================================================================
# start / resume
# =============================================================================
def _delivery_rng(attempt_id: str, rng: Optional[random.Random]) -> random.Random:
    if PIN_QUESTION_ORDER:
        return random.Random(attempt_id)
    return rng or random.Random()


def _session_payload(exam: Dict[str, Any], attempt: Dict[str, Any],
                     questions: List[Dict[str, Any]], now: datetime,
                     rng: Optional[random.Random], resuming: bool) -> Dict[str, Any]:
    delivered = deliver_questions(
        questions,
        bool(exam.get("shuffle_questions")),
        bool(exam.get("shuffle_options")),
        _delivery_rng(attempt["id"], rng),
    )
    out = {
        "attempt": attempt_json(attempt),
        "questions": delivered,
        "timeLimit": exam["time_limit"],
        "remainingTime": remaining_seconds(_aware(attempt["started_at"]), now, exam["time_limit"]),
        "attemptNumber": attempt["attempt_number"],
        "maxAttempts": exam["max_attempts"],
    }
    if resuming:
        out["resuming"] = True
    return out


def start_attempt(store, course_id: str, exam_id: str, user_id: str, now: datetime,
                  rng: Optional[random.Random] = None) -> Dict[str, Any]:
    allowed, reason = can_attempt(store, user_id, course_id)
    if not allowed:
        raise Forbidden("You must be enrolled in this course to take exams", extra={"reason": reason})

    exam = _load_exam(store, course_id, exam_id)
    check_available(exam, now)
    questions = store.get_questions(exam_id)

    active = store.get_active_attempt(exam_id, user_id)
    if active:
        return _session_payload(exam, active, questions, now, rng, resuming=True)

    attempts = store.list_attempts(exam_id, user_id)
    passed = [a for a in attempts if a.get("passed")]
    if passed:
        best = max((a.get("score") or 0) for a in passed)
        raise Conflict("You have already passed this exam", code="AlreadyPassed",
                       extra={"passed": True, "score": best})
    if len(attempts) >= int(exam["max_attempts"]):
        raise Conflict(f"Maximum attempts ({exam['max_attempts']}) reached", code="AttemptLimitReached",
                       extra={"attemptsUsed": len(attempts), "maxAttempts": exam["max_attempts"]})

    fresh = transition({
        "id": new_id(),
        "exam_id": exam_id,
        "user_id": user_id,
        "attempt_number": len(attempts) + 1,
        "status": AttemptStatus.NONE.value,
        "started_at": now,
        "max_points": max_points(questions),
    }, AttemptEvent.START)
    row = store.insert_attempt(fresh)
    if row is None:
        # lost a concurrent start; the winner's attempt is the one to resume
        active = store.get_active_attempt(exam_id, user_id)
        if active:
            return _session_payload(exam, active, questions, now, rng, resuming=True)
        raise Conflict("Attempt could not be started, please retry", code="AttemptConflict")

    print(f"[exam] start attempt={row['id']} exam={exam_id} user={user_id} n={row['attempt_number']}", flush=True)
    return _session_payload(exam, row, questions, now, rng, resuming=False)


# =============================================================================
# submit
# =============================================================================
def submit_attempt(store, course_id: str, exam_id: Optional[str], attempt_id: Optional[str],
                   user_id: str, answers: Any, time_spent: Any, now: datetime) -> Dict[str, Any]:
    if not attempt_id:
        raise ValidationError("Attempt ID is required")

    with store.transaction() as tx:
        attempt = tx.get_attempt(attempt_id, for_update=True)
        if not attempt or (exam_id and attempt["exam_id"] != exam_id):
            raise NotFound("Attempt not found")
        if attempt["user_id"] != user_id:
            raise Forbidden("Not authorized")
        exam = _load_exam(tx, course_id, attempt["exam_id"])

        started_at = _aware(attempt["started_at"])
        event = submission_event(started_at, now, exam["time_limit"])
        try:
            status = next_status(attempt["status"], event)
        except IllegalTransition:
            raise Conflict("This attempt has already been submitted", code="AlreadySubmitted") from None

        questions = tx.get_questions(attempt["exam_id"])
        result = grade(questions, answers, exam["passing_score"])
        # client-reported time never exceeds the server-side elapsed time
        elapsed = elapsed_seconds(started_at, now)
        spent = min(_positive_int(time_spent) or elapsed, elapsed)

        tx.insert_answers(attempt_id, result["rows"])
        finished = tx.finish_attempt(attempt_id, {
            "status": status.value,
            "submitted_at": now,
            "score": result["score"],
            "total_points": result["earned_points"],
            "max_points": result["total_points"],
            "passed": result["passed"],
            "time_spent": spent,
        })
        if finished is None:
            raise Conflict("This attempt has already been submitted", code="AlreadySubmitted")

        certificate_id = None
        if result["passed"]:
            cert, created = issue_certificate(tx, user_id, course_id, result["score"], now)
            if created:
                tx.complete_enrollment(course_id, user_id, result["score"])
            tx.link_certificate(attempt_id, cert["id"])
            certificate_id = cert["id"]

    print(f"[exam] submit attempt={attempt_id} status={status.value} score={result['score']} "
          f"passed={result['passed']}", flush=True)

    out: Dict[str, Any] = {
        "score": result["score"],
        "totalPoints": result["total_points"],
        "earnedPoints": result["earned_points"],
        "passed": result["passed"],
        "passingScore": exam["passing_score"],
        "timeSpent": spent,
        "certificateId": certificate_id,
        "showResults": bool(exam.get("show_results")),
        "status": status.value,
    }
    if exam.get("show_results"):
        by_id = {r["question_id"]: r for r in result["rows"]}
        out["answers"] = [{
            "questionId": q["id"],
            "questionText": q.get("question_text"),
            "userAnswer": by_id[q["id"]]["answer"],
            "correctAnswer": q.get("correct_answer"),
            "isCorrect": by_id[q["id"]]["is_correct"],
            "explanation": q.get("explanation"),
            "pointsEarned": by_id[q["id"]]["points_earned"],
        } for q in questions]
    return out


def result_message(passed: bool) -> str:
    return PASS_MESSAGE if passed else FAIL_MESSAGE


# =============================================================================
# read model
# =============================================================================
def user_stats(exam: Dict[str, Any], attempts: List[Dict[str, Any]]) -> Dict[str, Any]:
    scores = [a["score"] for a in attempts if a.get("score") is not None]
    has_passed = any(a.get("passed") for a in attempts)
    last = max(attempts, key=lambda a: a["attempt_number"]) if attempts else None
    return {
        "attempts": len(attempts),
        "maxAttempts": exam["max_attempts"],
        "bestScore": max(scores) if scores else None,
        "hasPassed": has_passed,
        "canRetake": len(attempts) < int(exam["max_attempts"]) and not has_passed,
        "hasActiveAttempt": any(a.get("status") == AttemptStatus.IN_PROGRESS.value for a in attempts),
        "lastAttempt": attempt_json(last),
    }


def exam_view(store, course_id: str, exam_id: str, user_id: str, role: str,
              now: datetime) -> Dict[str, Any]:
    course = store.get_course(course_id)
    if not course:
        raise NotFound("Course not found")
    exam = _load_exam(store, course_id, exam_id)
    owner = is_course_owner(course, user_id, role)
    if not owner:
        check_available(exam, now)

    questions = sorted(store.get_questions(exam_id), key=lambda q: (q.get("order_index") or 0))
    body = exam_json(exam)
    body["questions"] = [full_question(q) if owner else project_question(q) for q in questions]
    body["questionCount"] = len(questions)
    return {
        "exam": body,
        "userStats": user_stats(exam, store.list_attempts(exam_id, user_id)),
        "isOwner": owner,
    }


def exam_list(store, course_id: str, user_id: str, role: str) -> Dict[str, Any]:
    course = store.get_course(course_id)
    if not course:
        raise NotFound("Course not found")
    owner = is_course_owner(course, user_id, role)
    out = []
    for e in store.list_exams(course_id, published_only=not owner):
        attempts = store.list_exam_attempts(e["id"])
        total = len(attempts)
        passed = sum(1 for a in attempts if a.get("passed"))
        avg = (sum((a.get("score") or 0) for a in attempts) / total) if total else 0.0
        body = exam_json(e)
        body["questionCount"] = int(e.get("question_count") or 0)
        body["stats"] = {
            "totalAttempts": total,
            "passedAttempts": passed,
            "passRate": (passed / total * 100) if total else 0,
            "avgScore": round(avg, 1),
        }
        out.append(body)
    return {"exams": out, "isOwner": owner}


# =============================================================================
# authoring
# =============================================================================
def parse_exam_fields(data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key, col in _EXAM_INPUT.items():
        if key in data:
            fields[col] = data[key]

    if not partial:
        title = (str(fields.get("title") or "")).strip()
        if not title:
            raise ValidationError("Exam title is required")
        for col, default in EXAM_DEFAULTS.items():
            if fields.get(col) is None:
                fields[col] = default
    if "title" in fields:
        fields["title"] = (str(fields["title"] or "")).strip()
        if not fields["title"]:
            raise ValidationError("Exam title is required")

    if "passing_score" in fields:
        fields["passing_score"] = _int_in(fields["passing_score"], "passingScore", 0, 100)
    if "time_limit" in fields:
        fields["time_limit"] = _int_in(fields["time_limit"], "timeLimit", 1, MAX_TIME_LIMIT_MIN)
    if "max_attempts" in fields:
        fields["max_attempts"] = _int_in(fields["max_attempts"], "maxAttempts", 1, MAX_ATTEMPTS_CAP)
    for col in _BOOL_COLS:
        if col in fields:
            fields[col] = bool(fields[col])
    for col in _TS_COLS:
        if col in fields:
            fields[col] = _parse_ts(fields[col], col)

    start, end = fields.get("available_from"), fields.get("available_until")
    if start and end and end < start:
        raise ValidationError("availableUntil must be after availableFrom")
    return fields


def parse_questions(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        raise ValidationError("questions must be a list")
    out = []
    for idx, q in enumerate(raw):
        if not isinstance(q, dict):
            raise ValidationError(f"question {idx + 1} is malformed")
        text = (str(q.get("questionText") or "")).strip()
        correct = q.get("correctAnswer")
        if not text or correct is None or str(correct).strip() == "":
            raise ValidationError(f"question {idx + 1} needs questionText and correctAnswer")
        qtype = (str(q.get("questionType") or "MULTIPLE_CHOICE")).upper()
        if qtype not in QUESTION_TYPES:
            raise ValidationError(f"question {idx + 1} has unknown questionType {qtype}")
        difficulty = (str(q.get("difficulty") or "MEDIUM")).upper()
        if difficulty not in DIFFICULTIES:
            raise ValidationError(f"question {idx + 1} has unknown difficulty {difficulty}")
        out.append({
            "id": new_id(),
            "question_text": text,
            "question_type": qtype,
            "options": [str(o) for o in json_list(q.get("options"))],
            "correct_answer": str(correct).strip(),
            "explanation": q.get("explanation"),
            "points": _int_in(q.get("points", 1), f"question {idx + 1} points", 1, MAX_QUESTION_POINTS),
            "order_index": idx,
            "difficulty": difficulty,
            "tags": [str(t) for t in json_list(q.get("tags"))],
        })
    return out


def create_exam(store, course_id: str, data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    fields = parse_exam_fields(data, partial=False)
    questions = parse_questions(data.get("questions") or [])
    fields.update({"id": new_id(), "course_id": course_id, "created_at": now})
    with store.transaction() as tx:
        exam = tx.create_exam(fields)
        tx.replace_questions(exam["id"], questions)
    print(f"[exam] created {exam['id']} course={course_id} questions={len(questions)}", flush=True)
    return exam


def update_exam(store, course_id: str, exam_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    _load_exam(store, course_id, exam_id)
    fields = parse_exam_fields(data, partial=True)
    questions = parse_questions(data["questions"]) if data.get("questions") is not None else None
    with store.transaction() as tx:
        if questions is not None and tx.exam_has_attempts(exam_id):
            raise Conflict("Questions cannot be changed once the exam has attempts",
                           code="ExamHasAttempts")
        exam = tx.update_exam(exam_id, fields)
        if questions is not None:
            tx.replace_questions(exam_id, questions)
    if exam is None:
        raise NotFound("Exam not found")
    return exam


def delete_exam(store, course_id: str, exam_id: str) -> None:
    _load_exam(store, course_id, exam_id)
    store.delete_exam(exam_id)
    print(f"[exam] deleted {exam_id} course={course_id}", flush=True)


def attempts_terminal(attempts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [a for a in attempts if a.get("status") in {s.value for s in TERMINAL}]
