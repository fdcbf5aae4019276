# exam_state.py
# -----------------------------------------------------------------------------
# Attempt lifecycle:  NONE --START--> IN_PROGRESS --SUBMIT--> GRADED
#                                                  --SUBMIT_LATE--> EXPIRED
# GRADED / EXPIRED are terminal for that attempt row.
# -----------------------------------------------------------------------------

import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

GRACE_SECONDS = int(os.getenv("EXAM_GRACE_SECONDS") or 30)


class AttemptStatus(str, Enum):
    NONE = "NONE"
    IN_PROGRESS = "IN_PROGRESS"
    GRADED = "GRADED"
    EXPIRED = "EXPIRED"


class AttemptEvent(str, Enum):
    START = "START"
    SUBMIT = "SUBMIT"
    SUBMIT_LATE = "SUBMIT_LATE"


TERMINAL = frozenset({AttemptStatus.GRADED, AttemptStatus.EXPIRED})

_TRANSITIONS = {
    (AttemptStatus.NONE, AttemptEvent.START): AttemptStatus.IN_PROGRESS,
    (AttemptStatus.IN_PROGRESS, AttemptEvent.SUBMIT): AttemptStatus.GRADED,
    (AttemptStatus.IN_PROGRESS, AttemptEvent.SUBMIT_LATE): AttemptStatus.EXPIRED,
}


class IllegalTransition(Exception):
    def __init__(self, status: AttemptStatus, event: AttemptEvent):
        super().__init__(f"cannot apply {event.value} to attempt in {status.value}")
        self.status = status
        self.event = event


def next_status(status: Any, event: Any) -> AttemptStatus:
    """Table lookup; raises IllegalTransition for every pair not listed above."""
    status = AttemptStatus(status or AttemptStatus.NONE)
    event = AttemptEvent(event)
    try:
        return _TRANSITIONS[(status, event)]
    except KeyError:
        raise IllegalTransition(status, event) from None


def transition(attempt: Dict[str, Any], event: Any) -> Dict[str, Any]:
    """Returns a copy of the attempt row with its status advanced."""
    out = dict(attempt or {})
    out["status"] = next_status(out.get("status"), event).value
    return out


def elapsed_seconds(started_at: datetime, now: datetime) -> int:
    return max(0, int((now - started_at).total_seconds()))


def remaining_seconds(started_at: datetime, now: datetime, time_limit_min: int) -> int:
    return max(0, int(time_limit_min) * 60 - elapsed_seconds(started_at, now))


def submission_event(started_at: datetime, now: datetime, time_limit_min: int,
                     grace_seconds: Optional[int] = None) -> AttemptEvent:
    grace = GRACE_SECONDS if grace_seconds is None else int(grace_seconds)
    if elapsed_seconds(started_at, now) > int(time_limit_min) * 60 + grace:
        return AttemptEvent.SUBMIT_LATE
    return AttemptEvent.SUBMIT
