from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from nmc_prep.core.cache import ProgressStore, RedisLatch, submit_key
from nmc_prep.core.database import get_db
from nmc_prep.jobs.queue import jobs
from nmc_prep.models.orm import utcnow
from nmc_prep.services.auth_state import auth_service
from nmc_prep.services.explainer import ExplanationGenerator
from nmc_prep.services.question_store import QuestionStore

def get_store(db: Session = Depends(get_db)) -> QuestionStore:
    return QuestionStore(db)

def get_progress_store() -> ProgressStore:
    return ProgressStore()

def get_latch_factory():
    return lambda session_id: RedisLatch(submit_key(session_id))

def get_clock():
    return utcnow

def get_jobs():
    return jobs

def get_auth_service():
    return auth_service

@lru_cache()
def _generator() -> ExplanationGenerator:
    return ExplanationGenerator()

def get_generator() -> ExplanationGenerator:
    return _generator()

def get_device_id(x_device_id: Optional[str] = Header(None)) -> str:
    return (x_device_id or "default")[:64]
