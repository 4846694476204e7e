import logging
from datetime import datetime
from typing import Optional

from redis import Redis, RedisError
from rq import Queue

from nmc_prep.core.cache import RedisCancellationToken
from nmc_prep.core.config import settings

logger = logging.getLogger(__name__)

redis = Redis.from_url(settings.REDIS_URL)
queue = Queue(settings.RQ_QUEUE, connection=redis)


class JobQueue:
    """Background work the API kicks off. Queueing problems are logged, never raised."""

    def __init__(self, q: Queue):
        self.q = q

    def enqueue_correction(self, session_id: str) -> Optional[str]:
        if not settings.CORRECTION_ENABLED:
            return None
        try:
            RedisCancellationToken(session_id).clear()
            job = self.q.enqueue(
                "nmc_prep.jobs.correction_job.correct_session_questions", session_id,
                job_timeout=settings.CORRECTION_JOB_TIMEOUT, meta={"state": "queued", "session_id": session_id},
            )
        except RedisError as e:
            logger.warning("Could not queue correction for session %s: %s", session_id, e)
            return None
        return job.id

    def cancel_correction(self, session_id: str) -> bool:
        try:
            RedisCancellationToken(session_id).cancel()
        except RedisError as e:
            logger.warning("Could not cancel correction for session %s: %s", session_id, e)
            return False
        logger.info("Correction for session %s cancelled", session_id)
        return True

    def schedule_expiry(self, session_id: str, at: datetime) -> Optional[str]:
        try:
            job = self.q.enqueue_at(at, "nmc_prep.jobs.deadline_job.expire_session", session_id)
        except RedisError as e:
            logger.warning("Could not schedule expiry of session %s: %s", session_id, e)
            return None
        return job.id


jobs = JobQueue(queue)
