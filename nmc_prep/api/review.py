import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from redis import RedisError

from nmc_prep.api.deps import get_clock, get_generator, get_latch_factory, get_progress_store, get_store
from nmc_prep.core.auth import TokenData, require_roles
from nmc_prep.services.exceptions import GeneratorUnavailable, SessionNotFound, StaleQuestionError, SubmissionFailed
from nmc_prep.services.review import regenerate_explanation, review_session
from nmc_prep.services.sessions import settle_expired

logger = logging.getLogger(__name__)

router = APIRouter()

class RegenerateIn(BaseModel):
    expected_version: Optional[int] = None

@router.get("/{session_id}")
def get_review(session_id: str, user: TokenData = Depends(require_roles("student", "admin")), store=Depends(get_store),
               progress=Depends(get_progress_store), latch_factory=Depends(get_latch_factory), clock=Depends(get_clock)):
    try:
        s = store.get_session(session_id, user.sub)
    except SessionNotFound:
        raise HTTPException(404, "Session not found")
    try:
        s = settle_expired(store, s, progress, latch=latch_factory(s.id), clock=clock)
    except SubmissionFailed as e:
        raise HTTPException(503, detail={"message": f"Time is up but the result could not be saved: {e.cause}", "retryable": True})
    except RedisError as e:
        logger.error("Submission latch unavailable for %s: %s", session_id, e)
        raise HTTPException(503, detail={"message": "Submission is temporarily unavailable.", "retryable": True})
    if s.ended_at is None:
        raise HTTPException(409, "Session is still in progress")
    review = review_session(store, session_id, user.sub)
    review["items"] = [asdict(i) for i in review["items"]]
    return review

@router.post("/questions/{question_id}/explanation", dependencies=[Depends(require_roles("student", "admin"))])
def regenerate(question_id: str, payload: Optional[RegenerateIn] = None, store=Depends(get_store), generator=Depends(get_generator)):
    expected = payload.expected_version if payload else None
    try:
        q = regenerate_explanation(store, generator, question_id, expected)
    except LookupError:
        raise HTTPException(404, "Question not found")
    except StaleQuestionError as e:
        raise HTTPException(409, str(e))
    except GeneratorUnavailable:
        raise HTTPException(502, "Failed to generate explanation. The service may be busy; try again later.")
    except ValueError as e:
        logger.warning("Unusable explanation for %s: %s", question_id, e)
        raise HTTPException(502, "Failed to generate explanation. The service may be busy; try again later.")
    return {
        "question_id": q.id, "correct_answer_letter": q.correct_answer_letter, "explanation": q.explanation,
        "is_edited": q.is_edited, "version": q.version,
    }
