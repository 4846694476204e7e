from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

from nmc_prep.models.orm import utcnow
from nmc_prep.services.exceptions import SessionClosed

logger = logging.getLogger(__name__)

__all__ = ["Deadline", "Latch", "OneShotLatch", "SessionRunner", "as_utc"]


def as_utc(dt: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything we store is UTC
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


class Deadline:
    """Wall-clock deadline from an absolute start, so a reload recomputes the same remaining time."""

    def __init__(self, started_at: datetime, duration_seconds: int, clock: Callable[[], datetime] = utcnow):
        self.started_at = as_utc(started_at)
        self.duration_seconds = int(duration_seconds)
        self.clock = clock

    def elapsed(self) -> int:
        return max(0, math.floor((as_utc(self.clock()) - self.started_at).total_seconds()))

    def remaining(self) -> int:
        return max(0, self.duration_seconds - self.elapsed())

    def expired(self) -> bool:
        return self.remaining() <= 0

    @property
    def ends_at(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration_seconds)


class Latch(Protocol):
    def acquire(self) -> bool: ...
    def reset(self) -> None: ...


class OneShotLatch:
    """In-process latch: the first acquire() wins until reset()."""

    def __init__(self):
        self._lock = threading.Lock()
        self._taken = False

    def acquire(self) -> bool:
        with self._lock:
            if self._taken:
                return False
            self._taken = True
            return True

    def reset(self) -> None:
        with self._lock:
            self._taken = False


class SessionRunner:
    """
    In-memory state of one running session: position, answers and the clock.

    Manual submission and the deadline both go through end_session(), which
    is guarded by a latch so the session is submitted at most once. All the
    mutators are O(1) dictionary/int updates.
    """

    def __init__(
        self,
        session_id: str,
        question_ids: Sequence[str],
        deadline: Deadline,
        latch: Latch,
        answers: Mapping[str, str] | None = None,
        current_index: int = 0,
        option_counts: Mapping[str, int] | None = None,
        ended: bool = False,
        on_deadline: Callable[[dict[str, str]], Any] | None = None,
    ):
        self.session_id = session_id
        self.question_ids = list(question_ids)
        self._positions = {qid: i for i, qid in enumerate(self.question_ids)}
        self.deadline = deadline
        self.latch = latch
        self.answers: dict[str, str] = {k: v for k, v in (answers or {}).items() if k in self._positions and v}
        self.current_index = self._clamp(current_index)
        self.option_counts = dict(option_counts or {})
        self.ended = ended
        self.on_deadline = on_deadline

    def _clamp(self, i: int) -> int:
        if not self.question_ids:
            return 0
        return max(0, min(int(i), len(self.question_ids) - 1))

    @property
    def accepting_input(self) -> bool:
        return not self.ended and not self.deadline.expired()

    def _ensure_open(self) -> None:
        if not self.accepting_input:
            raise SessionClosed(f"Session {self.session_id} is no longer accepting answers")

    @property
    def current_question_id(self) -> str | None:
        return self.question_ids[self.current_index] if self.question_ids else None

    # ---- navigation ----

    def go_to(self, index: int) -> int:
        self._ensure_open()
        self.current_index = self._clamp(index)
        return self.current_index

    def next(self) -> int:
        return self.go_to(self.current_index + 1)

    def previous(self) -> int:
        return self.go_to(self.current_index - 1)

    # ---- answers ----

    def answer(self, question_id: str, letter: str) -> None:
        self._ensure_open()
        if question_id not in self._positions:
            raise ValueError(f"Question {question_id} is not part of session {self.session_id}")
        letter = (letter or "").strip().upper()
        if len(letter) != 1 or not letter.isalpha():
            raise ValueError("Answer must be a single letter")
        count = self.option_counts.get(question_id)
        if count is not None and not 0 <= ord(letter) - 65 < count:
            raise ValueError(f"Answer {letter} is not an option for question {question_id}")
        self.answers[question_id] = letter

    def clear_answer(self, question_id: str) -> None:
        self._ensure_open()
        self.answers.pop(question_id, None)

    # ---- ending ----

    def end_session(self, submit: Callable[[dict[str, str]], Any]):
        """
        Run submit(answers) once. Returns its result, or None if another
        trigger got there first. If submit raises, the latch is released so
        the user can try again.
        """
        if self.ended or not self.latch.acquire():
            return None
        try:
            result = submit(dict(self.answers))
        except Exception:
            self.latch.reset()
            raise
        self.ended = True
        return result

    def tick(self):
        """One polling step: fires on_deadline exactly once when time runs out."""
        if self.ended or not self.deadline.expired() or self.on_deadline is None:
            return None
        logger.info("Time is up for session %s", self.session_id)
        return self.end_session(self.on_deadline)

    # ---- persistence ----

    def snapshot(self) -> dict:
        return {
            "session_id": self.session_id,
            "current_index": self.current_index,
            "answers": dict(self.answers),
            "started_at": self.deadline.started_at.isoformat(),
        }

    @classmethod
    def restore(cls, session_id: str, question_ids: Sequence[str], deadline: Deadline, latch: Latch,
                state: Mapping | None, **kwargs) -> "SessionRunner":
        state = state or {}
        if state.get("session_id") not in (None, session_id):
            state = {}
        return cls(
            session_id, question_ids, deadline, latch,
            answers=state.get("answers") or {},
            current_index=state.get("current_index") or 0,
            **kwargs,
        )
