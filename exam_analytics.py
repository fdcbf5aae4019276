# exam_analytics.py — instructor analytics over finished (GRADED / EXPIRED) attempts.

from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List

from exam_engine import attempts_terminal
from grading import json_list

FLAG_MIN_ANSWERS = 5
TOO_EASY_RATE = 0.95
TOO_HARD_RATE = 0.2
RECENT_LIMIT = 20


def _iso(ts):
    return ts.isoformat() if isinstance(ts, datetime) else ts


def _overall(done: List[Dict[str, Any]]) -> Dict[str, Any]:
    n = len(done)
    scores = [(a.get("score") or 0) for a in done]
    passed = sum(1 for a in done if a.get("passed"))
    return {
        "totalAttempts": n,
        "uniqueStudents": len({a["user_id"] for a in done}),
        "passedCount": passed,
        "failedCount": n - passed,
        "passRate": round(passed / n * 100) if n else 0,
        "averageScore": round(sum(scores) / n, 1) if n else 0,
        "highestScore": max(scores) if n else 0,
        "lowestScore": min(scores) if n else 0,
        "averageTimeMinutes": round(sum((a.get("time_spent") or 0) for a in done) / n / 60) if n else 0,
    }


def _distribution(done: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    buckets = [0] * 10
    for a in done:
        buckets[min(9, int((a.get("score") or 0) // 10))] += 1
    return [{"range": f"{i * 10}-{(i + 1) * 10}%", "count": c} for i, c in enumerate(buckets)]


def _question_row(q: Dict[str, Any], answers: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(answers)
    correct = sum(1 for a in answers if a.get("is_correct"))
    rate = (correct / total) if total else 0.0

    options: Dict[str, int] = {}
    if (q.get("question_type") or "") == "MULTIPLE_CHOICE":
        for opt in json_list(q.get("options")):
            label = str(opt)[:1].strip().lower()
            options[str(opt)] = sum(
                1 for a in answers if (a.get("answer") or "").strip().lower() == label and label
            )

    flag = None
    if total > FLAG_MIN_ANSWERS:
        if rate > TOO_EASY_RATE:
            flag = "TOO_EASY"
        elif rate < TOO_HARD_RATE:
            flag = "TOO_HARD"

    text = q.get("question_text") or ""
    return {
        "id": q["id"],
        "questionText": text[:100] + ("..." if len(text) > 100 else ""),
        "questionType": q.get("question_type"),
        "difficulty": q.get("difficulty"),
        "totalAnswered": total,
        "correctCount": correct,
        "incorrectCount": total - correct,
        "correctRate": round(rate * 100) if total else 0,
        "optionDistribution": options,
        "flag": flag,
    }


def _struggling(done: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for a in done:
        if a.get("passed") or int(a.get("attempt_number") or 0) < 2 or a["user_id"] in out:
            continue
        mine = [x for x in done if x["user_id"] == a["user_id"]]
        out[a["user_id"]] = {
            "userId": a["user_id"],
            "userName": a.get("user_name"),
            "email": a.get("user_email"),
            "attempts": len(mine),
            "bestScore": max((x.get("score") or 0) for x in mine),
        }
    return list(out.values())


def exam_analytics(store, exam: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    questions = store.get_questions(exam["id"])
    done = attempts_terminal(store.list_exam_attempts(exam["id"]))
    done.sort(key=lambda a: a.get("submitted_at") or a.get("started_at"), reverse=True)

    by_question: Dict[str, List[Dict[str, Any]]] = {q["id"]: [] for q in questions}
    for ans in store.list_exam_answers(exam["id"]):
        by_question.setdefault(ans["question_id"], []).append(ans)

    per_day: Dict[str, int] = {}
    for a in done:
        ts = a.get("submitted_at")
        if isinstance(ts, datetime):
            day = ts.date().isoformat()
            per_day[day] = per_day.get(day, 0) + 1

    return {
        "examTitle": exam.get("title"),
        "passingScore": exam.get("passing_score"),
        "maxAttempts": exam.get("max_attempts"),
        "timeLimit": exam.get("time_limit"),
        "questionCount": len(questions),
        "overallStats": _overall(done),
        "scoreDistribution": _distribution(done),
        "questionAnalytics": [_question_row(q, by_question.get(q["id"], [])) for q in questions],
        "recentAttempts": [{
            "id": a["id"],
            "user": {"id": a["user_id"], "name": a.get("user_name"), "email": a.get("user_email")},
            "attemptNumber": a["attempt_number"],
            "score": a.get("score"),
            "passed": a.get("passed"),
            "timeSpent": a.get("time_spent"),
            "submittedAt": _iso(a.get("submitted_at")),
        } for a in done[:RECENT_LIMIT]],
        "strugglingStudents": _struggling(done),
        "attemptsByDay": [{"date": d, "count": c} for d, c in sorted(per_day.items())],
        "generatedAt": now.isoformat(),
    }
