import random
import sys
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import register_error_handlers  # noqa: E402
from fakes import Clock, MemoryStore  # noqa: E402


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    s = MemoryStore()
    s.add_user("teacher", role="TEACHER")
    s.add_user("admin", role="ADMIN")
    s.add_user("learner")
    s.add_course("c1", teacher_id="teacher")
    return s


@pytest.fixture
def make_app(store, clock):
    """make_app(factory, who={"id": ..., "role": ...}, **deps) -> (app, who)"""

    def _make(factory, who=None, **extra):
        who = dict(who or {"id": "learner", "role": "USER"})
        app = Flask(__name__)
        app.testing = True
        register_error_handlers(app)

        @app.before_request
        def _set_user():
            if who.get("id"):
                g.user_id = who["id"]
                g.user_email = f"{who['id']}@example.com"
                g.user_role = who.get("role", "USER")

        deps = {"store": store, "now": clock, "rng": random.Random(7)}
        deps.update(extra)
        app.register_blueprint(factory("/api", deps))
        return app, who

    return _make
