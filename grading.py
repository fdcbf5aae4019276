# grading.py
# -----------------------------------------------------------------------------
# Deterministic grading + question delivery.
# - Binary credit per question (0 or question.points), no partial credit
# - Malformed answers are treated as wrong; nothing in here raises on input
# - Delivery never exposes correct_answer / explanation
# -----------------------------------------------------------------------------

import json
import os
import random
from typing import Any, Dict, List, Optional

QUESTION_TYPES = ("MULTIPLE_CHOICE", "TRUE_FALSE", "SHORT_ANSWER")
DIFFICULTIES = ("EASY", "MEDIUM", "HARD")

ANSWER_CHAR_LIMIT = int(os.getenv("EXAM_ANSWER_CHAR_LIMIT") or 500)


def json_list(raw: Any) -> List[Any]:
    """options/tags arrive either as a list (jsonb) or as JSON text."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return list(raw)
    if isinstance(raw, (tuple, set)):
        return list(raw)
    try:
        val = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return val if isinstance(val, list) else []


def _norm(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return None
    s = str(value).strip().lower()
    return s or None


def answer_is_correct(question: Dict[str, Any], value: Any) -> bool:
    given = _norm(value)
    if given is None:
        return False
    qtype = (question.get("question_type") or "MULTIPLE_CHOICE").upper()
    correct = question.get("correct_answer")
    if qtype == "SHORT_ANSWER":
        variants = {_norm(v) for v in str(correct or "").split("|")}
        variants.discard(None)
        return given in variants
    # MULTIPLE_CHOICE and TRUE_FALSE: trimmed, case-insensitive equality
    return given == _norm(correct)


def clamp_answer(value: Any, limit: int = ANSWER_CHAR_LIMIT) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:max(0, int(limit))]


def _points(question: Dict[str, Any]) -> int:
    try:
        return max(0, int(question.get("points") or 0))
    except (TypeError, ValueError):
        return 0


def max_points(questions: List[Dict[str, Any]]) -> int:
    return sum(_points(q) for q in questions)


def grade(questions: List[Dict[str, Any]], answers: Optional[Dict[str, Any]],
          passing_score: Any) -> Dict[str, Any]:
    """
    Grades an answer map {question_id: value} against the exam's questions.
    Returns {rows, earned_points, total_points, score, passed}; score is a
    2-decimal percentage and 0 when the exam carries no points.
    """
    if not isinstance(answers, dict):
        answers = {}
    rows: List[Dict[str, Any]] = []
    earned = 0
    total = 0
    for q in questions:
        pts = _points(q)
        total += pts
        raw = answers.get(str(q["id"]))
        ok = answer_is_correct(q, raw)
        got = pts if ok else 0
        earned += got
        rows.append({
            "question_id": q["id"],
            "answer": clamp_answer(raw),
            "is_correct": ok,
            "points_earned": got,
        })

    score = round(100.0 * earned / total, 2) if total > 0 else 0.0
    try:
        threshold = float(passing_score)
    except (TypeError, ValueError):
        threshold = 100.0
    return {
        "rows": rows,
        "earned_points": earned,
        "total_points": total,
        "score": score,
        "passed": bool(score >= threshold),
    }


# -----------------------------------------------------------------------------
# Delivery
# -----------------------------------------------------------------------------
def fisher_yates(items: List[Any], rng: random.Random) -> List[Any]:
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randint(0, i)
        out[i], out[j] = out[j], out[i]
    return out


def project_question(q: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": q["id"],
        "questionText": q.get("question_text"),
        "questionType": q.get("question_type"),
        "options": json_list(q.get("options")),
        "points": _points(q),
        "difficulty": q.get("difficulty"),
    }


def full_question(q: Dict[str, Any]) -> Dict[str, Any]:
    """Owner/admin view; includes the answer key."""
    out = project_question(q)
    out.update({
        "correctAnswer": q.get("correct_answer"),
        "explanation": q.get("explanation"),
        "orderIndex": q.get("order_index"),
        "tags": json_list(q.get("tags")),
    })
    return out


def deliver_questions(questions: List[Dict[str, Any]], shuffle_questions: bool,
                      shuffle_options: bool, rng: random.Random) -> List[Dict[str, Any]]:
    ordered = sorted(questions, key=lambda q: (q.get("order_index") or 0))
    projected = [project_question(q) for q in ordered]
    if shuffle_questions:
        projected = fisher_yates(projected, rng)
    if shuffle_options:
        for p in projected:
            if p["options"]:
                p["options"] = fisher_yates(p["options"], rng)
    return projected
