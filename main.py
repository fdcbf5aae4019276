# main.py — JSON API app, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the session cookie set by the auth service; every API lives under <BASE_PATH>/api.

import os
import random
from datetime import datetime, timezone
from typing import Callable, Optional

from flask import Flask, jsonify

import db
from admin import create_admin_blueprint
from certificates import create_certificates_blueprint
from enrollment import create_enrollment_blueprint
from errors import register_error_handlers
from exam import create_exam_blueprint
from identity import attach_identity
from premium import create_premium_blueprint
from rate_limit import MemoryWindowStore, PgWindowStore, RateLimiter
from store import PgStore

# =============================================================================
# BASE_PATH & config
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
API_PREFIX = BASE_PATH + "/api"

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "1").lower() in ("1", "true", "yes")
RATE_LIMIT_BACKEND = (os.getenv("RATE_LIMIT_BACKEND") or ("postgres" if db.is_configured() else "memory")).lower()
ENSURE_SCHEMA = os.getenv("ENSURE_SCHEMA", "1").lower() in ("1", "true", "yes")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_rate_limiter(clock: Callable[[], datetime]) -> RateLimiter:
    if RATE_LIMIT_BACKEND == "postgres":
        return RateLimiter(PgWindowStore(db), clock=clock)
    print("[ratelimit] using process-local window store", flush=True)
    return RateLimiter(MemoryWindowStore(), clock=clock)


# =============================================================================
# App factory
# =============================================================================
def create_app(store=None, rate_limiter: Optional[RateLimiter] = None,
               now: Optional[Callable[[], datetime]] = None,
               rng: Optional[random.Random] = None) -> Flask:
    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.secret_key = SECRET_KEY
    app.config.update(
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=SESSION_COOKIE_SECURE,  # HTTPS on Render/production
    )

    now = now or utcnow
    if store is None:
        if ENSURE_SCHEMA and db.is_configured():
            db.ensure_schema()
        store = PgStore(db)
    rate_limiter = rate_limiter or _default_rate_limiter(now)

    register_error_handlers(app)
    app.before_request(attach_identity)

    deps = {"store": store, "now": now, "rng": rng, "rate_limiter": rate_limiter}
    app.register_blueprint(create_exam_blueprint(API_PREFIX, deps))
    app.register_blueprint(create_enrollment_blueprint(API_PREFIX, deps))
    app.register_blueprint(create_certificates_blueprint(API_PREFIX, deps))
    app.register_blueprint(create_premium_blueprint(API_PREFIX, deps))
    app.register_blueprint(create_admin_blueprint(API_PREFIX, deps, name="admin"))

    @app.get(BASE_PATH + "/healthz")
    def healthz():
        if not isinstance(store, PgStore):
            return jsonify({"ok": True})
        try:
            row = db.fetch_one("SELECT 1 AS ok;")
        except Exception as e:
            print(f"[DB] health check failed: {e}", flush=True)
            return jsonify({"ok": False, "error": "db-fail"}), 500
        ok = bool(row and row.get("ok") == 1)
        return jsonify({"ok": ok}), (200 if ok else 500)

    @app.cli.command("init-db")
    def init_db():
        """Create tables and indexes (idempotent)."""
        db.ensure_schema()

    return app


app = create_app()

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
