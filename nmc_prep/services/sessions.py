"""Glue between the stored session, the progress cache and the runner."""
from __future__ import annotations

import logging
import random
from typing import Callable, Optional

from nmc_prep.core.cache import ProgressStore, RedisLatch, progress_key, submit_key
from nmc_prep.models.orm import UserSession, utcnow
from nmc_prep.services.configuration import SessionConfig
from nmc_prep.services.exceptions import NotEnoughQuestions
from nmc_prep.services.runner import Deadline, Latch, SessionRunner
from nmc_prep.services.scoring import submit_session

logger = logging.getLogger(__name__)


def start_session(store, user_id: str, config: SessionConfig, shuffle: Callable = random.shuffle) -> UserSession:
    """
    Pick random questions for the configuration and create the session.
    A short pool gives a shorter session; an empty one is an error.
    """
    questions = store.fetch_random(config, config.count)
    if not questions:
        raise NotEnoughQuestions(config.count, 0)
    if len(questions) < config.count:
        logger.warning("Only %d of %d questions available for %s", len(questions), config.count, config.category)
    shuffle(questions)
    s = store.create_session(user_id, config, questions)
    logger.info("Session %s started for %s: %d questions, %ds", s.id, user_id, s.total_questions, s.time_limit_seconds)
    return s


def open_runner(store, session: UserSession, progress: ProgressStore,
                latch: Optional[Latch] = None, clock: Callable = utcnow) -> SessionRunner:
    """Rebuild the runner for a session from the database and the progress cache."""
    items = store.session_items(session.id)
    deadline = Deadline(session.started_at, session.time_limit_seconds, clock)
    key = progress_key(session.user_id, session.id)

    def on_deadline(answers):
        graded, written = submit_session(store, session.id, answers, clock())
        progress.delete(key)
        return graded, written

    return SessionRunner.restore(
        session.id,
        [sq.question_id for sq in items],
        deadline,
        latch or RedisLatch(submit_key(session.id)),
        progress.load(key),
        option_counts={sq.question_id: len(sq.question.options or []) for sq in items},
        ended=session.ended_at is not None,
        on_deadline=on_deadline,
    )


def is_in_progress(session: UserSession, clock: Callable = utcnow) -> bool:
    """Not ended and still inside its time limit."""
    if session.ended_at is not None:
        return False
    return not Deadline(session.started_at, session.time_limit_seconds, clock).expired()


def settle_expired(store, session: UserSession, progress: ProgressStore,
                   latch: Optional[Latch] = None, clock: Callable = utcnow) -> UserSession:
    """
    Submit a session whose time ran out but that nobody has ended yet, so
    readers never see an expired session without its result. Returns the
    session as stored afterwards.
    """
    if session.ended_at is not None or is_in_progress(session, clock):
        return session
    open_runner(store, session, progress, latch=latch, clock=clock).tick()
    return store.get_session(session.id, session.user_id)


def save_runner(progress: ProgressStore, user_id: str, runner: SessionRunner) -> bool:
    return progress.save(progress_key(user_id, runner.session_id), runner.snapshot())
