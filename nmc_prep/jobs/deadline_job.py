import logging

from nmc_prep.core.cache import ProgressStore
from nmc_prep.core.database import SessionLocal
from nmc_prep.jobs.queue import jobs
from nmc_prep.services.exceptions import SessionNotFound
from nmc_prep.services.question_store import QuestionStore
from nmc_prep.services.sessions import open_runner

logger = logging.getLogger(__name__)


def expire_session(session_id: str, db=None, progress=None, latch=None) -> bool:
    """
    Submit a session whose time ran out with whatever answers were saved.
    Returns True if this call did the submission.
    """
    own = db is None
    db = db or SessionLocal()
    try:
        store = QuestionStore(db)
        try:
            s = store.get_session(session_id)
        except SessionNotFound:
            logger.warning("Expiry fired for unknown session %s", session_id)
            return False
        if s.ended_at is not None:
            return False
        runner = open_runner(store, s, progress or ProgressStore(), latch=latch)
        if not runner.deadline.expired():
            # scheduler fired early
            jobs.schedule_expiry(session_id, runner.deadline.ends_at)
            return False
        result = runner.tick()
        if result is None:
            logger.debug("Session %s not expired or already being submitted", session_id)
            return False
        return bool(result[1])
    finally:
        if own:
            db.close()
