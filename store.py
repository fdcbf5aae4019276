# store.py
# -----------------------------------------------------------------------------
# Record store over psycopg. One method ~ one statement.
# Races are closed by constraints, not by check-then-act:
#   - enrollments (course_id, user_id) unique        -> create_enrollment
#   - one IN_PROGRESS attempt per (exam, user)        -> insert_attempt
#   - certificates (user_id, course_id) unique        -> insert_certificate
#   - attempt finish / request review are conditional -> finish_attempt, set_premium_request_status
#   - limit increments happen in SQL                  -> apply_entitlement
# -----------------------------------------------------------------------------

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from psycopg.types.json import Jsonb

EXAM_FIELDS = (
    "title", "description", "passing_score", "time_limit", "max_attempts",
    "shuffle_questions", "shuffle_options", "show_results", "is_published",
    "is_active", "available_from", "available_until",
)
ATTEMPT_FINISH_FIELDS = (
    "status", "submitted_at", "score", "total_points", "max_points", "passed", "time_spent",
)
ENTITLEMENT_SET_FIELDS = (
    "is_premium", "is_verified", "premium_expires_at", "job_limit", "talent_limit",
)
ENTITLEMENT_INC_FIELDS = ("job_limit", "talent_limit")


def new_id() -> str:
    return uuid.uuid4().hex


class PgStore:
    """
    runner: anything exposing fetch_all / fetch_one / execute / execute_returning
    and transaction(); the db module itself, or a db.TxRunner.
    """

    def __init__(self, runner):
        self.db = runner

    @contextmanager
    def transaction(self) -> Iterator["PgStore"]:
        with self.db.transaction() as tx:
            yield PgStore(tx)

    # ---------------------------------------------------------------- users
    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("SELECT * FROM public.users WHERE id = %s;", (user_id,))

    def apply_entitlement(self, user_id: str, changes: Dict[str, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """changes = {"set": {col: value}, "increment": {col: delta}}; one UPDATE."""
        clauses: List[str] = []
        params: List[Any] = []
        for col, val in (changes.get("set") or {}).items():
            if col not in ENTITLEMENT_SET_FIELDS:
                raise ValueError(f"unknown entitlement column {col}")
            clauses.append(f"{col} = %s")
            params.append(val)
        for col, delta in (changes.get("increment") or {}).items():
            if col not in ENTITLEMENT_INC_FIELDS:
                raise ValueError(f"unknown entitlement column {col}")
            clauses.append(f"{col} = {col} + %s")
            params.append(int(delta))
        if not clauses:
            return self.get_user(user_id)
        params.append(user_id)
        rows = self.db.execute_returning(f"""
            UPDATE public.users
               SET {", ".join(clauses)}
             WHERE id = %s
         RETURNING *;
        """, tuple(params))
        return rows[0] if rows else None

    # -------------------------------------------------------------- courses
    def get_course(self, course_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("SELECT * FROM public.courses WHERE id = %s;", (course_id,))

    # ----------------------------------------------------------- enrollments
    def get_enrollment(self, course_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("""
            SELECT * FROM public.enrollments
             WHERE course_id = %s AND user_id = %s;
        """, (course_id, user_id))

    def create_enrollment(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Returns None when the (course, user) pair already exists."""
        rows = self.db.execute_returning("""
            INSERT INTO public.enrollments
                (id, course_id, user_id, status, payment_phone, payment_screenshot_url, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (course_id, user_id) DO NOTHING
            RETURNING *;
        """, (row["id"], row["course_id"], row["user_id"], row.get("status") or "PENDING",
              row.get("payment_phone"), row.get("payment_screenshot_url"), row["created_at"]))
        return rows[0] if rows else None

    def list_enrollments(self) -> List[Dict[str, Any]]:
        return self.db.fetch_all("""
            SELECT e.*, u.name AS user_name, u.email AS user_email, c.title AS course_title
              FROM public.enrollments e
              JOIN public.users u   ON u.id = e.user_id
              JOIN public.courses c ON c.id = e.course_id
             ORDER BY e.created_at DESC;
        """)

    def set_enrollment_status(self, enrollment_id: str, status: str) -> Optional[Dict[str, Any]]:
        rows = self.db.execute_returning("""
            UPDATE public.enrollments SET status = %s WHERE id = %s RETURNING *;
        """, (status, enrollment_id))
        return rows[0] if rows else None

    def complete_enrollment(self, course_id: str, user_id: str, final_score: float) -> None:
        self.db.execute("""
            UPDATE public.enrollments
               SET status = 'COMPLETED', final_score = %s
             WHERE course_id = %s AND user_id = %s;
        """, (final_score, course_id, user_id))

    # ---------------------------------------------------------------- exams
    def list_exams(self, course_id: str, published_only: bool) -> List[Dict[str, Any]]:
        where = "AND e.is_published AND e.is_active" if published_only else ""
        return self.db.fetch_all(f"""
            SELECT e.*,
                   (SELECT COUNT(*) FROM public.exam_questions q WHERE q.exam_id = e.id) AS question_count
              FROM public.exams e
             WHERE e.course_id = %s {where}
             ORDER BY e.created_at DESC;
        """, (course_id,))

    def get_exam(self, course_id: str, exam_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("""
            SELECT * FROM public.exams WHERE id = %s AND course_id = %s;
        """, (exam_id, course_id))

    def create_exam(self, row: Dict[str, Any]) -> Dict[str, Any]:
        cols = ["id", "course_id", "created_at"] + [f for f in EXAM_FIELDS if f in row]
        placeholders = ", ".join(["%s"] * len(cols))
        rows = self.db.execute_returning(f"""
            INSERT INTO public.exams ({", ".join(cols)})
            VALUES ({placeholders})
            RETURNING *;
        """, tuple(row[c] for c in cols))
        return rows[0]

    def update_exam(self, exam_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cols = [f for f in EXAM_FIELDS if f in fields]
        if not cols:
            return self.db.fetch_one("SELECT * FROM public.exams WHERE id = %s;", (exam_id,))
        sets = ", ".join(f"{c} = %s" for c in cols)
        rows = self.db.execute_returning(f"""
            UPDATE public.exams SET {sets} WHERE id = %s RETURNING *;
        """, tuple(fields[c] for c in cols) + (exam_id,))
        return rows[0] if rows else None

    def delete_exam(self, exam_id: str) -> int:
        # questions and attempts cascade from exams, answers from attempts
        return self.db.execute("DELETE FROM public.exams WHERE id = %s;", (exam_id,))

    def exam_has_attempts(self, exam_id: str) -> bool:
        row = self.db.fetch_one(
            "SELECT 1 AS one FROM public.exam_attempts WHERE exam_id = %s LIMIT 1;", (exam_id,)
        )
        return row is not None

    def get_questions(self, exam_id: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all("""
            SELECT * FROM public.exam_questions
             WHERE exam_id = %s
             ORDER BY order_index, id;
        """, (exam_id,))

    def replace_questions(self, exam_id: str, questions: List[Dict[str, Any]]) -> None:
        self.db.execute("DELETE FROM public.exam_questions WHERE exam_id = %s;", (exam_id,))
        for q in questions:
            self.db.execute("""
                INSERT INTO public.exam_questions
                    (id, exam_id, question_text, question_type, options, correct_answer,
                     explanation, points, order_index, difficulty, tags)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
            """, (q["id"], exam_id, q["question_text"], q["question_type"], Jsonb(q.get("options") or []),
                  q["correct_answer"], q.get("explanation"), q["points"], q["order_index"],
                  q["difficulty"], Jsonb(q.get("tags") or [])))

    # ------------------------------------------------------------- attempts
    def list_attempts(self, exam_id: str, user_id: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all("""
            SELECT * FROM public.exam_attempts
             WHERE exam_id = %s AND user_id = %s
             ORDER BY attempt_number;
        """, (exam_id, user_id))

    def get_attempt(self, attempt_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        lock = " FOR UPDATE" if for_update else ""
        return self.db.fetch_one(
            f"SELECT * FROM public.exam_attempts WHERE id = %s{lock};", (attempt_id,)
        )

    def get_active_attempt(self, exam_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("""
            SELECT * FROM public.exam_attempts
             WHERE exam_id = %s AND user_id = %s AND status = 'IN_PROGRESS';
        """, (exam_id, user_id))

    def insert_attempt(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Returns None when another IN_PROGRESS attempt (or the same attempt number)
        already exists for this (exam, user); the caller resumes that one instead.
        """
        rows = self.db.execute_returning("""
            INSERT INTO public.exam_attempts
                (id, exam_id, user_id, attempt_number, status, started_at, max_points)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING *;
        """, (row["id"], row["exam_id"], row["user_id"], row["attempt_number"],
              row["status"], row["started_at"], row["max_points"]))
        return rows[0] if rows else None

    def finish_attempt(self, attempt_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Moves an IN_PROGRESS attempt to its terminal row; None if it was not IN_PROGRESS."""
        cols = [f for f in ATTEMPT_FINISH_FIELDS if f in fields]
        sets = ", ".join(f"{c} = %s" for c in cols)
        rows = self.db.execute_returning(f"""
            UPDATE public.exam_attempts
               SET {sets}
             WHERE id = %s AND status = 'IN_PROGRESS'
         RETURNING *;
        """, tuple(fields[c] for c in cols) + (attempt_id,))
        return rows[0] if rows else None

    def link_certificate(self, attempt_id: str, certificate_id: str) -> None:
        self.db.execute("""
            UPDATE public.exam_attempts SET certificate_id = %s WHERE id = %s;
        """, (certificate_id, attempt_id))

    def insert_answers(self, attempt_id: str, rows: List[Dict[str, Any]]) -> None:
        for r in rows:
            self.db.execute("""
                INSERT INTO public.exam_answers
                    (id, attempt_id, question_id, answer, is_correct, points_earned)
                VALUES (%s, %s, %s, %s, %s, %s);
            """, (new_id(), attempt_id, r["question_id"], r["answer"],
                  r["is_correct"], r["points_earned"]))

    def list_exam_attempts(self, exam_id: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all("""
            SELECT t.*, u.name AS user_name, u.email AS user_email
              FROM public.exam_attempts t
              JOIN public.users u ON u.id = t.user_id
             WHERE t.exam_id = %s
             ORDER BY t.started_at DESC;
        """, (exam_id,))

    def list_exam_answers(self, exam_id: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all("""
            SELECT a.question_id, a.answer, a.is_correct
              FROM public.exam_answers a
              JOIN public.exam_attempts t ON t.id = a.attempt_id
             WHERE t.exam_id = %s AND t.status IN ('GRADED', 'EXPIRED');
        """, (exam_id,))

    # --------------------------------------------------------- certificates
    def get_certificate_for(self, user_id: str, course_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("""
            SELECT * FROM public.certificates WHERE user_id = %s AND course_id = %s;
        """, (user_id, course_id))

    def insert_certificate(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Returns None when (user, course) already holds a certificate."""
        rows = self.db.execute_returning("""
            INSERT INTO public.certificates (id, user_id, course_id, score, issued_at, certificate_url)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, course_id) DO NOTHING
            RETURNING *;
        """, (row["id"], row["user_id"], row["course_id"], row["score"],
              row["issued_at"], row["certificate_url"]))
        return rows[0] if rows else None

    def get_certificate(self, certificate_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("""
            SELECT c.*, u.name AS holder_name, co.title AS course_title
              FROM public.certificates c
              JOIN public.users u    ON u.id = c.user_id
              JOIN public.courses co ON co.id = c.course_id
             WHERE c.id = %s;
        """, (certificate_id,))

    def list_certificates(self, user_id: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all("""
            SELECT c.*, co.title AS course_title, co.instructor AS course_instructor
              FROM public.certificates c
              JOIN public.courses co ON co.id = c.course_id
             WHERE c.user_id = %s
             ORDER BY c.issued_at DESC;
        """, (user_id,))

    # ------------------------------------------------------ premium requests
    def create_premium_request(self, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.db.execute_returning("""
            INSERT INTO public.premium_requests
                (id, user_id, plan_type, amount, screenshot_url, phone_number, status, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, 'PENDING', %s)
            RETURNING *;
        """, (row["id"], row["user_id"], row["plan_type"], row["amount"],
              row["screenshot_url"], row["phone_number"], row["created_at"]))
        return rows[0]

    def list_premium_requests(self) -> List[Dict[str, Any]]:
        return self.db.fetch_all("""
            SELECT r.*, u.name AS user_name, u.email AS user_email
              FROM public.premium_requests r
              JOIN public.users u ON u.id = r.user_id
             ORDER BY r.created_at DESC;
        """)

    def get_premium_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("SELECT * FROM public.premium_requests WHERE id = %s;", (request_id,))

    def set_premium_request_status(self, request_id: str, status: str) -> Optional[Dict[str, Any]]:
        """No-op (None) once a request is APPROVED, so a plan is never applied twice per request."""
        rows = self.db.execute_returning("""
            UPDATE public.premium_requests
               SET status = %s
             WHERE id = %s AND status <> 'APPROVED'
         RETURNING *;
        """, (status, request_id))
        return rows[0] if rows else None

    # --------------------------------------------------------- notifications
    def create_notification(self, user_id: str, content: str, link: Optional[str], now) -> Dict[str, Any]:
        rows = self.db.execute_returning("""
            INSERT INTO public.notifications (id, user_id, content, link, is_read, created_at)
            VALUES (%s, %s, %s, %s, FALSE, %s)
            RETURNING *;
        """, (new_id(), user_id, content, link, now))
        return rows[0]
