# db.py — psycopg3 + pooling, env-driven connection selection, schema bootstrap
# Local dev: DATABASE_URL_LOCAL / DB_HOST+DB_PORT; managed runtime: Cloud SQL socket.

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlparse, parse_qs, unquote

from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN") or 1)
POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX") or 6)


def is_configured() -> bool:
    return bool(DATABASE_URL or DATABASE_URL_LOCAL or (DB_NAME and DB_USER and DB_PASS))


def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))


def _log_choice(kwargs: dict, origin: str):
    if "host" in kwargs and isinstance(kwargs["host"], str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}", flush=True)
    else:
        host = kwargs.get("host", "localhost")
        port = kwargs.get("port", 5432)
        print(f"[DB] {origin}: TCP -> {host}:{port}", flush=True)


def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # SQLAlchemy-style schemes are accepted and normalized
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs


def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }


def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }


def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}", flush=True)

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.", flush=True)
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}", flush=True)

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs


# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)


def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=POOL_MIN_SIZE,
                              max_size=POOL_MAX_SIZE, open=True)


@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn


def fetch_all(q, params=None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()


def fetch_one(q, params=None) -> Optional[Dict[str, Any]]:
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None) -> int:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            n = cur.rowcount
        conn.commit()
        return n


def execute_returning(q, params=None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows


class TxRunner:
    """Same helper surface as this module, bound to one open transaction."""

    def __init__(self, conn):
        self.conn = conn

    def fetch_all(self, q, params=None) -> List[Dict[str, Any]]:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

    def fetch_one(self, q, params=None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(q, params)
        return rows[0] if rows else None

    def execute(self, q, params=None) -> int:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.rowcount

    def execute_returning(self, q, params=None) -> List[Dict[str, Any]]:
        return self.fetch_all(q, params)

    @contextmanager
    def transaction(self) -> Iterator["TxRunner"]:
        # nested blocks join the outer transaction
        yield self


@contextmanager
def transaction() -> Iterator[TxRunner]:
    """All statements issued through the yielded runner commit or roll back together."""
    with get_conn() as conn:
        with conn.transaction():
            yield TxRunner(conn)


# =============================================================================
# Schema
# =============================================================================
SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS public.users (
        id                 TEXT PRIMARY KEY,
        email              TEXT UNIQUE NOT NULL,
        name               TEXT,
        role               TEXT NOT NULL DEFAULT 'USER',
        is_premium         BOOLEAN NOT NULL DEFAULT FALSE,
        is_verified        BOOLEAN NOT NULL DEFAULT FALSE,
        premium_expires_at TIMESTAMPTZ,
        job_limit          INTEGER NOT NULL DEFAULT 0,
        talent_limit       INTEGER NOT NULL DEFAULT 0,
        created_at         TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.courses (
        id          TEXT PRIMARY KEY,
        title       TEXT NOT NULL,
        teacher_id  TEXT REFERENCES public.users(id),
        instructor  TEXT,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.enrollments (
        id                     TEXT PRIMARY KEY,
        course_id              TEXT NOT NULL REFERENCES public.courses(id) ON DELETE CASCADE,
        user_id                TEXT NOT NULL REFERENCES public.users(id) ON DELETE CASCADE,
        status                 TEXT NOT NULL DEFAULT 'PENDING',
        final_score            DOUBLE PRECISION,
        payment_phone          TEXT,
        payment_screenshot_url TEXT,
        created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (course_id, user_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exams (
        id                TEXT PRIMARY KEY,
        course_id         TEXT NOT NULL REFERENCES public.courses(id) ON DELETE CASCADE,
        title             TEXT NOT NULL,
        description       TEXT,
        passing_score     INTEGER NOT NULL DEFAULT 70,
        time_limit        INTEGER NOT NULL DEFAULT 60,
        max_attempts      INTEGER NOT NULL DEFAULT 3,
        shuffle_questions BOOLEAN NOT NULL DEFAULT TRUE,
        shuffle_options   BOOLEAN NOT NULL DEFAULT TRUE,
        show_results      BOOLEAN NOT NULL DEFAULT TRUE,
        is_published      BOOLEAN NOT NULL DEFAULT FALSE,
        is_active         BOOLEAN NOT NULL DEFAULT TRUE,
        available_from    TIMESTAMPTZ,
        available_until   TIMESTAMPTZ,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_questions (
        id             TEXT PRIMARY KEY,
        exam_id        TEXT NOT NULL REFERENCES public.exams(id) ON DELETE CASCADE,
        question_text  TEXT NOT NULL,
        question_type  TEXT NOT NULL DEFAULT 'MULTIPLE_CHOICE',
        options        JSONB NOT NULL DEFAULT '[]'::jsonb,
        correct_answer TEXT NOT NULL,
        explanation    TEXT,
        points         INTEGER NOT NULL DEFAULT 1,
        order_index    INTEGER NOT NULL DEFAULT 0,
        difficulty     TEXT NOT NULL DEFAULT 'MEDIUM',
        tags           JSONB NOT NULL DEFAULT '[]'::jsonb
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.certificates (
        id              TEXT PRIMARY KEY,
        user_id         TEXT NOT NULL REFERENCES public.users(id) ON DELETE CASCADE,
        course_id       TEXT NOT NULL REFERENCES public.courses(id) ON DELETE CASCADE,
        score           DOUBLE PRECISION,
        issued_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
        certificate_url TEXT,
        UNIQUE (user_id, course_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_attempts (
        id             TEXT PRIMARY KEY,
        exam_id        TEXT NOT NULL REFERENCES public.exams(id) ON DELETE CASCADE,
        user_id        TEXT NOT NULL REFERENCES public.users(id) ON DELETE CASCADE,
        attempt_number INTEGER NOT NULL,
        status         TEXT NOT NULL DEFAULT 'IN_PROGRESS',
        started_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
        submitted_at   TIMESTAMPTZ,
        score          DOUBLE PRECISION,
        total_points   INTEGER,
        max_points     INTEGER,
        passed         BOOLEAN,
        time_spent     INTEGER,
        certificate_id TEXT REFERENCES public.certificates(id) ON DELETE SET NULL,
        UNIQUE (exam_id, user_id, attempt_number)
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS exam_attempts_one_in_progress
        ON public.exam_attempts (exam_id, user_id)
        WHERE status = 'IN_PROGRESS';
    """,
    """
    CREATE TABLE IF NOT EXISTS public.exam_answers (
        id            TEXT PRIMARY KEY,
        attempt_id    TEXT NOT NULL REFERENCES public.exam_attempts(id) ON DELETE CASCADE,
        question_id   TEXT NOT NULL REFERENCES public.exam_questions(id),
        answer        TEXT,
        is_correct    BOOLEAN NOT NULL DEFAULT FALSE,
        points_earned INTEGER NOT NULL DEFAULT 0,
        UNIQUE (attempt_id, question_id)
    );
    """,
    # answers outlive question edits; older databases had ON DELETE CASCADE here
    """
    ALTER TABLE public.exam_answers
        DROP CONSTRAINT IF EXISTS exam_answers_question_id_fkey,
        ADD CONSTRAINT exam_answers_question_id_fkey
            FOREIGN KEY (question_id) REFERENCES public.exam_questions(id);
    """,
    """
    CREATE TABLE IF NOT EXISTS public.premium_requests (
        id             TEXT PRIMARY KEY,
        user_id        TEXT NOT NULL REFERENCES public.users(id) ON DELETE CASCADE,
        plan_type      TEXT NOT NULL,
        amount         DOUBLE PRECISION,
        screenshot_url TEXT,
        phone_number   TEXT,
        status         TEXT NOT NULL DEFAULT 'PENDING',
        created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.notifications (
        id         TEXT PRIMARY KEY,
        user_id    TEXT NOT NULL REFERENCES public.users(id) ON DELETE CASCADE,
        content    TEXT NOT NULL,
        link       TEXT,
        is_read    BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.rate_limits (
        key      TEXT PRIMARY KEY,
        count    INTEGER NOT NULL DEFAULT 0,
        reset_at TIMESTAMPTZ NOT NULL
    );
    """,
]


def ensure_schema():
    with transaction() as tx:
        for ddl in SCHEMA_SQL:
            tx.execute(ddl)
    print("[DB] schema ensured", flush=True)
