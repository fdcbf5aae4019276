import random
import sys
from datetime import timedelta
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import exam_engine  # noqa: E402
from errors import Conflict, Forbidden, NotFound, ValidationError  # noqa: E402
from exam_engine import exam_view, start_attempt, submit_attempt  # noqa: E402
from grading import deliver_questions  # noqa: E402

MCQ = [{"id": "q1", "correct_answer": "A", "options": ["A. yes", "B. no"]}]


def _start(store, clock, exam_id="exam1", user="learner"):
    return start_attempt(store, "c1", exam_id, user, clock(), random.Random(1))


def _submit(store, clock, attempt_id, answers, user="learner", time_spent=None):
    return submit_attempt(store, "c1", "exam1", attempt_id, user, answers, time_spent, clock())


# ------------------------------------------------------------------ gate
@pytest.mark.parametrize("status", [None, "PENDING", "REJECTED"])
def test_start_requires_approved_enrollment(store, clock, status):
    store.add_exam("c1", questions=MCQ)
    if status:
        store.add_enrollment("c1", "learner", status)
    with pytest.raises(Forbidden) as ei:
        _start(store, clock)
    assert ei.value.extra["reason"] == ("not enrolled" if status is None else "enrollment not approved")
    assert store.rows("attempts") == []


def test_start_rejects_unpublished_and_out_of_window(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", "draft", questions=MCQ, is_published=False)
    store.add_exam("c1", "later", questions=MCQ, available_from=clock() + timedelta(days=1))
    store.add_exam("c1", "over", questions=MCQ, available_until=clock() - timedelta(days=1))
    for exam_id, msg in (("draft", "Exam is not available"),
                         ("later", "Exam is not yet available"),
                         ("over", "Exam availability period has ended")):
        with pytest.raises(Forbidden) as ei:
            _start(store, clock, exam_id)
        assert ei.value.message == msg
    with pytest.raises(NotFound):
        _start(store, clock, "missing")


# ------------------------------------------------------------------ start / resume
def test_start_creates_attempt_then_resumes_it(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ + [{"id": "q2", "correct_answer": "true",
                                           "question_type": "TRUE_FALSE", "points": 3}], time_limit=10)
    first = _start(store, clock)
    assert first["attempt"]["attemptNumber"] == 1
    assert first["attempt"]["status"] == "IN_PROGRESS"
    assert first["attempt"]["maxPoints"] == 4
    assert first["remainingTime"] == 600
    assert "resuming" not in first
    assert all("correctAnswer" not in q for q in first["questions"])

    clock.advance(100)
    again = _start(store, clock)
    assert again["resuming"] is True
    assert again["attempt"]["id"] == first["attempt"]["id"]
    assert again["remainingTime"] == 500
    assert len(store.rows("attempts")) == 1


def test_concurrent_start_resumes_winner(store, clock, monkeypatch):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    winner = _start(store, clock)["attempt"]["id"]

    # second caller read "no active attempt" before the first insert landed
    real = store.get_active_attempt
    calls = {"n": 0}

    def racy(exam_id, user_id):
        calls["n"] += 1
        return None if calls["n"] == 1 else real(exam_id, user_id)

    monkeypatch.setattr(store, "get_active_attempt", racy)
    monkeypatch.setattr(store, "list_attempts", lambda exam_id, user_id: [])
    out = _start(store, clock)
    assert out["resuming"] is True
    assert out["attempt"]["id"] == winner
    in_progress = [a for a in store.rows("attempts") if a["status"] == "IN_PROGRESS"]
    assert len(in_progress) == 1


def test_attempt_limit_reached_after_failures(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ, max_attempts=2)
    for _ in range(2):
        a = _start(store, clock)["attempt"]
        res = _submit(store, clock, a["id"], {"q1": "B"})
        assert res["passed"] is False
    with pytest.raises(Conflict) as ei:
        _start(store, clock)
    assert ei.value.code == "AttemptLimitReached"
    assert ei.value.extra == {"attemptsUsed": 2, "maxAttempts": 2}
    numbers = sorted(a["attempt_number"] for a in store.rows("attempts"))
    assert numbers == [1, 2]


def test_already_passed_blocks_new_attempt(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]
    _submit(store, clock, a["id"], {"q1": "A"})
    store.set_enrollment_status(store.get_enrollment("c1", "learner")["id"], "APPROVED")
    with pytest.raises(Conflict) as ei:
        _start(store, clock)
    assert ei.value.code == "AlreadyPassed"


def test_attempt_numbers_are_gapless_across_expiry(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ, time_limit=1, max_attempts=3)
    a1 = _start(store, clock)["attempt"]
    clock.advance(500)
    assert _submit(store, clock, a1["id"], {"q1": "B"})["status"] == "EXPIRED"
    a2 = _start(store, clock)["attempt"]
    assert a2["attemptNumber"] == 2


# ------------------------------------------------------------------ submit
def test_pass_issues_certificate_and_completes_enrollment(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]
    clock.advance(42)
    res = _submit(store, clock, a["id"], {"q1": "a"})

    assert res["score"] == 100.0
    assert res["passed"] is True
    assert res["status"] == "GRADED"
    assert res["timeSpent"] == 42
    assert res["answers"][0]["isCorrect"] is True
    assert res["answers"][0]["correctAnswer"] == "A"

    certs = store.rows("certificates")
    assert len(certs) == 1
    assert res["certificateId"] == certs[0]["id"]
    assert certs[0]["certificate_url"] == f"/certificate/{certs[0]['id']}"
    enrollment = store.get_enrollment("c1", "learner")
    assert enrollment["status"] == "COMPLETED"
    assert enrollment["final_score"] == 100.0
    assert store.get_attempt(a["id"])["certificate_id"] == certs[0]["id"]


def test_fail_leaves_enrollment_and_issues_nothing(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]
    res = _submit(store, clock, a["id"], {"q1": "B"})
    assert res["score"] == 0.0
    assert res["passed"] is False
    assert res["certificateId"] is None
    assert store.rows("certificates") == []
    assert store.get_enrollment("c1", "learner")["status"] == "APPROVED"


def test_late_submission_is_expired_but_scored(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ, time_limit=1)
    a = _start(store, clock)["attempt"]
    clock.advance(60 + 61)
    res = _submit(store, clock, a["id"], {"q1": "A"})
    assert res["status"] == "EXPIRED"
    assert res["score"] == 100.0
    row = store.get_attempt(a["id"])
    assert row["status"] == "EXPIRED"
    assert row["score"] == 100.0
    assert row["passed"] is True


def test_double_submit_is_conflict(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]
    _submit(store, clock, a["id"], {"q1": "B"})
    with pytest.raises(Conflict) as ei:
        _submit(store, clock, a["id"], {"q1": "A"})
    assert ei.value.code == "AlreadySubmitted"
    assert len(store.rows("answers")) == 1


def test_submit_checks_owner_and_existence(store, clock):
    store.add_user("other")
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]
    with pytest.raises(Forbidden):
        _submit(store, clock, a["id"], {"q1": "A"}, user="other")
    with pytest.raises(NotFound):
        _submit(store, clock, "nope", {})
    with pytest.raises(ValidationError):
        _submit(store, clock, None, {})


def test_failed_attempt_update_rolls_back_answers(store, clock, monkeypatch):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]

    def boom(attempt_id, fields):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(store, "finish_attempt", boom)
    with pytest.raises(RuntimeError):
        _submit(store, clock, a["id"], {"q1": "A"})
    assert store.rows("answers") == []
    assert store.get_attempt(a["id"])["status"] == "IN_PROGRESS"


def test_second_passing_attempt_reuses_certificate(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", "e1", questions=[{"id": "x1", "correct_answer": "A"}])
    store.add_exam("c1", "e2", questions=[{"id": "x2", "correct_answer": "B"}])
    a1 = start_attempt(store, "c1", "e1", "learner", clock())["attempt"]
    r1 = submit_attempt(store, "c1", "e1", a1["id"], "learner", {"x1": "A"}, None, clock())
    store.set_enrollment_status(store.get_enrollment("c1", "learner")["id"], "APPROVED")
    a2 = start_attempt(store, "c1", "e2", "learner", clock())["attempt"]
    r2 = submit_attempt(store, "c1", "e2", a2["id"], "learner", {"x2": "b"}, None, clock())
    assert r1["certificateId"] == r2["certificateId"]
    assert len(store.rows("certificates")) == 1


def test_show_results_off_hides_answer_key(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ, show_results=False)
    a = _start(store, clock)["attempt"]
    clock.advance(45)
    res = _submit(store, clock, a["id"], {"q1": "A"}, time_spent=30)
    assert "answers" not in res
    assert res["showResults"] is False
    assert res["timeSpent"] == 30


def test_reported_time_is_capped_at_elapsed(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]
    clock.advance(90)
    res = _submit(store, clock, a["id"], {"q1": "B"}, time_spent=10 ** 12)
    assert res["timeSpent"] == 90
    assert store.get_attempt(a["id"])["time_spent"] == 90


SHUFFLED = [{"id": f"q{i}", "correct_answer": "A", "options": ["A", "B", "C", "D"]} for i in range(8)]


def _order(questions):
    return [(q["id"], q["options"]) for q in questions]


def _start_twice(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=SHUFFLED, shuffle_questions=True, shuffle_options=True)
    first = start_attempt(store, "c1", "exam1", "learner", clock(), random.Random(1))
    clock.advance(30)
    again = start_attempt(store, "c1", "exam1", "learner", clock(), random.Random(99))
    assert again["resuming"] is True
    return first, again


def test_pinned_order_is_stable_across_resume(store, clock, monkeypatch):
    monkeypatch.setattr(exam_engine, "PIN_QUESTION_ORDER", True)
    first, again = _start_twice(store, clock)
    assert _order(again["questions"]) == _order(first["questions"])
    seeded = deliver_questions(store.get_questions("exam1"), True, True,
                               random.Random(first["attempt"]["id"]))
    assert _order(first["questions"]) == _order(seeded)


def test_unpinned_resume_reshuffles(store, clock, monkeypatch):
    monkeypatch.setattr(exam_engine, "PIN_QUESTION_ORDER", False)
    first, again = _start_twice(store, clock)
    qs = store.get_questions("exam1")
    assert _order(first["questions"]) == _order(deliver_questions(qs, True, True, random.Random(1)))
    assert _order(again["questions"]) == _order(deliver_questions(qs, True, True, random.Random(99)))
    assert _order(again["questions"]) != _order(first["questions"])
    assert sorted(q["id"] for q in again["questions"]) == sorted(q["id"] for q in first["questions"])


# ------------------------------------------------------------------ read model
def test_exam_view_strips_answers_for_learner_and_reports_stats(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ, max_attempts=2)
    a = _start(store, clock)["attempt"]
    _submit(store, clock, a["id"], {"q1": "B"})

    view = exam_view(store, "c1", "exam1", "learner", "USER", clock())
    assert view["isOwner"] is False
    assert "correctAnswer" not in view["exam"]["questions"][0]
    stats = view["userStats"]
    assert stats["attempts"] == 1
    assert stats["bestScore"] == 0.0
    assert stats["canRetake"] is True
    assert stats["hasActiveAttempt"] is False
    assert stats["lastAttempt"]["id"] == a["id"]

    owner = exam_view(store, "c1", "exam1", "teacher", "TEACHER", clock())
    assert owner["isOwner"] is True
    assert owner["exam"]["questions"][0]["correctAnswer"] == "A"


def test_owner_sees_unpublished_exam(store, clock):
    store.add_exam("c1", questions=MCQ, is_published=False)
    with pytest.raises(Forbidden):
        exam_view(store, "c1", "exam1", "learner", "USER", clock())
    assert exam_view(store, "c1", "exam1", "admin", "ADMIN", clock())["isOwner"] is True


# ------------------------------------------------------------------ authoring
def test_create_exam_applies_defaults_and_orders_questions(store, clock):
    exam = exam_engine.create_exam(store, "c1", {
        "title": "  Quiz  ",
        "questions": [
            {"questionText": "2+2?", "correctAnswer": "B", "options": ["A. 3", "B. 4"]},
            {"questionText": "Sky blue?", "correctAnswer": "true", "questionType": "true_false", "points": 2},
        ],
    }, clock())
    assert exam["title"] == "Quiz"
    assert exam["passing_score"] == 70
    assert exam["time_limit"] == 60
    assert exam["max_attempts"] == 3
    assert exam["is_published"] is False
    qs = store.get_questions(exam["id"])
    assert [q["order_index"] for q in qs] == [0, 1]
    assert qs[0]["difficulty"] == "MEDIUM"
    assert qs[1]["question_type"] == "TRUE_FALSE"


@pytest.mark.parametrize("payload", [
    {},
    {"title": "x", "passingScore": 101},
    {"title": "x", "maxAttempts": 0},
    {"title": "x", "maxAttempts": 101},
    {"title": "x", "timeLimit": 10 ** 12},
    {"title": "x", "questions": [{"questionText": "q", "correctAnswer": "A", "points": 2 ** 31}]},
    {"title": "x", "questions": [{"questionText": "q", "correctAnswer": "A", "questionType": "ESSAY"}]},
    {"title": "x", "questions": [{"questionText": "q", "correctAnswer": "A", "points": 0}]},
])
def test_create_exam_validation(store, clock, payload):
    with pytest.raises(ValidationError):
        exam_engine.create_exam(store, "c1", payload, clock())
    assert store.rows("exams") == []


def test_update_replaces_questions_and_delete_cascades(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    updated = exam_engine.update_exam(store, "c1", "exam1", {
        "passingScore": 50,
        "questions": [{"questionText": "new", "correctAnswer": "C"}],
    })
    assert updated["passing_score"] == 50
    assert [q["question_text"] for q in store.get_questions("exam1")] == ["new"]

    _start(store, clock)
    exam_engine.delete_exam(store, "c1", "exam1")
    assert store.rows("exams") == []
    assert store.rows("questions") == []
    assert store.rows("attempts") == []


def test_questions_are_frozen_once_answers_exist(store, clock):
    store.add_enrollment("c1", "learner")
    store.add_exam("c1", questions=MCQ)
    a = _start(store, clock)["attempt"]
    _submit(store, clock, a["id"], {"q1": "B"})

    with pytest.raises(Conflict) as ei:
        exam_engine.update_exam(store, "c1", "exam1", {
            "questions": [{"questionText": "new", "correctAnswer": "C"}],
        })
    assert ei.value.code == "ExamHasAttempts"
    assert [q["id"] for q in store.get_questions("exam1")] == ["q1"]
    assert [r["question_id"] for r in store.rows("answers")] == ["q1"]

    # settings can still change
    assert exam_engine.update_exam(store, "c1", "exam1", {"passingScore": 40})["passing_score"] == 40

    exam_engine.delete_exam(store, "c1", "exam1")
    assert store.rows("answers") == []


def test_require_owner(store):
    with pytest.raises(Forbidden):
        exam_engine.require_owner(store, "c1", "learner", "USER")
    assert exam_engine.require_owner(store, "c1", "teacher", "TEACHER")["id"] == "c1"
    with pytest.raises(NotFound):
        exam_engine.require_owner(store, "nope", "admin", "ADMIN")
