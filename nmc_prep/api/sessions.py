import logging
from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from redis import RedisError

from nmc_prep.api.deps import (
    get_clock, get_device_id, get_jobs, get_latch_factory, get_progress_store, get_store,
)
from nmc_prep.core.auth import TokenData, require_roles
from nmc_prep.core.cache import progress_key, view_key
from nmc_prep.core.config import settings
from nmc_prep.services import configuration as cfg
from nmc_prep.services.exceptions import (
    ConfigurationError, NotEnoughQuestions, SessionClosed, SessionNotFound, SubmissionFailed,
)
from nmc_prep.services.scoring import submit_session
from nmc_prep.services.sessions import is_in_progress, open_runner, save_runner, start_session

logger = logging.getLogger(__name__)

router = APIRouter()
student = require_roles("student", "admin")

class SessionCreate(BaseModel):
    count: int = cfg.DEFAULT_COUNT
    category: str = cfg.COMBINED
    topics: List[str] = []

class AnswerIn(BaseModel):
    question_id: str
    letter: Optional[str] = Field(None, max_length=1)

class NavigateIn(BaseModel):
    index: Optional[int] = None
    direction: Optional[Literal["next", "previous"]] = None

class ProgressIn(BaseModel):
    current_index: int = 0
    answers: Dict[str, str] = {}
    view: Optional[str] = None

class SubmitIn(BaseModel):
    answers: Optional[Dict[str, str]] = None

class SessionSummary(BaseModel):
    id: str; category: str; topics: List[str]; total_questions: int; time_limit_seconds: int
    started_at: datetime; ended_at: Optional[datetime] = None; score: Optional[int] = None
    percentage: Optional[int] = None; in_progress: bool

class Context:
    """Per-request bundle of the collaborators a session endpoint needs."""
    def __init__(self, user: TokenData = Depends(student), store=Depends(get_store), progress=Depends(get_progress_store),
                 latch_factory=Depends(get_latch_factory), clock=Depends(get_clock), jobs=Depends(get_jobs),
                 device_id: str = Depends(get_device_id)):
        self.user = user; self.store = store; self.progress = progress
        self.latch_factory = latch_factory; self.clock = clock; self.jobs = jobs; self.device_id = device_id

    def session(self, session_id: str):
        try:
            return self.store.get_session(session_id, self.user.sub)
        except SessionNotFound:
            raise HTTPException(404, "Session not found")

    def runner(self, s):
        return open_runner(self.store, s, self.progress, latch=self.latch_factory(s.id), clock=self.clock)

    def remember_view(self, view: str, session_id: Optional[str], index: int = 0):
        self.progress.save(view_key(self.user.sub, self.device_id), {"view": view, "session_id": session_id, "current_index": index})

def _summary(s, clock) -> SessionSummary:
    pct = round(s.score_achieved * 100 / s.total_questions) if s.score_achieved is not None and s.total_questions else None
    return SessionSummary(id=s.id, category=s.category_selection, topics=list(s.topics or []), total_questions=s.total_questions,
                          time_limit_seconds=s.time_limit_seconds, started_at=s.started_at, ended_at=s.ended_at,
                          score=s.score_achieved, percentage=pct, in_progress=is_in_progress(s, clock))

def _state(ctx: Context, s, runner, submission_error: Optional[str] = None) -> dict:
    items = ctx.store.session_items(s.id)
    ended = s.ended_at is not None
    answers = {sq.question_id: sq.user_answer_letter for sq in items if sq.user_answer_letter} if ended else dict(runner.answers)
    return {
        **_summary(s, ctx.clock).model_dump(),
        "remaining_seconds": 0 if ended else runner.deadline.remaining(),
        "ends_at": runner.deadline.ends_at,
        "accepting_answers": not ended and runner.accepting_input,
        "current_index": runner.current_index,
        "answers": answers,
        "poll_seconds": settings.TIMER_POLL_SECONDS,
        "submission_error": submission_error,
        "questions": [
            {"id": sq.question_id, "order": sq.order_in_session, "question_text": sq.question.question_text,
             "options": list(sq.question.options or [])}
            for sq in items
        ],
    }

def _result(ctx: Context, s) -> dict:
    out = _summary(s, ctx.clock).model_dump()
    out["items"] = [
        {"question_id": sq.question_id, "order": sq.order_in_session, "answer": sq.user_answer_letter, "is_correct": bool(sq.is_correct)}
        for sq in ctx.store.session_items(s.id)
    ]
    return out

def _tick(ctx: Context, s, runner) -> Optional[str]:
    try:
        runner.tick()
    except SubmissionFailed as e:
        return f"Time is up but the result could not be saved: {e.cause}"
    except RedisError as e:
        logger.warning("Deadline check for %s skipped: %s", s.id, e)
    return None

@router.get("/options")
def options():
    return {
        "counts": list(cfg.QUESTION_COUNTS),
        "default_count": cfg.DEFAULT_COUNT,
        "categories": list(cfg.CATEGORIES),
        "topics": list(cfg.TOPICS),
        "time_limits_minutes": {c: cfg.time_limit_minutes(c) for c in cfg.QUESTION_COUNTS},
        "poll_seconds": settings.TIMER_POLL_SECONDS,
    }

@router.get("", response_model=List[SessionSummary])
def list_sessions(ctx: Context = Depends()):
    return [_summary(s, ctx.clock) for s in ctx.store.list_sessions(ctx.user.sub)]

@router.post("", status_code=201)
def create_session(payload: SessionCreate, ctx: Context = Depends()):
    try:
        config = cfg.build_config(payload.count, payload.category, payload.topics)
    except ConfigurationError as e:
        raise HTTPException(400, str(e))
    try:
        s = start_session(ctx.store, ctx.user.sub, config)
    except NotEnoughQuestions:
        raise HTTPException(404, f"No questions found for {config.category}")
    runner = ctx.runner(s)
    save_runner(ctx.progress, ctx.user.sub, runner)
    ctx.remember_view("session", s.id)
    ctx.jobs.enqueue_correction(s.id)
    ctx.jobs.schedule_expiry(s.id, runner.deadline.ends_at)
    return _state(ctx, s, runner)

@router.get("/{session_id}")
def get_session(session_id: str, ctx: Context = Depends()):
    s = ctx.session(session_id)
    runner = ctx.runner(s)
    error = _tick(ctx, s, runner)
    return _state(ctx, s, runner, error)

@router.get("/{session_id}/progress")
def get_progress(session_id: str, ctx: Context = Depends()):
    s = ctx.session(session_id)
    return {
        "session_id": s.id,
        "progress": ctx.progress.load(progress_key(ctx.user.sub, s.id)),
        "view": ctx.progress.load(view_key(ctx.user.sub, ctx.device_id)),
    }

@router.put("/{session_id}/progress")
def put_progress(session_id: str, payload: ProgressIn, ctx: Context = Depends()):
    s = ctx.session(session_id)
    runner = ctx.runner(s)
    try:
        runner.go_to(payload.current_index)
        for qid, letter in payload.answers.items():
            runner.answer(qid, letter)
    except SessionClosed as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    saved = save_runner(ctx.progress, ctx.user.sub, runner)
    ctx.remember_view(payload.view or "session", s.id, runner.current_index)
    return {"saved": saved, "current_index": runner.current_index, "answers": runner.answers}

@router.post("/{session_id}/answers")
def answer(session_id: str, payload: AnswerIn, ctx: Context = Depends()):
    s = ctx.session(session_id)
    runner = ctx.runner(s)
    try:
        if payload.letter:
            runner.answer(payload.question_id, payload.letter)
        else:
            runner.clear_answer(payload.question_id)
    except SessionClosed as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    save_runner(ctx.progress, ctx.user.sub, runner)
    return {"answers": runner.answers, "remaining_seconds": runner.deadline.remaining()}

@router.post("/{session_id}/navigate")
def navigate(session_id: str, payload: NavigateIn, ctx: Context = Depends()):
    s = ctx.session(session_id)
    runner = ctx.runner(s)
    try:
        if payload.direction == "next":
            runner.next()
        elif payload.direction == "previous":
            runner.previous()
        elif payload.index is not None:
            runner.go_to(payload.index)
        else:
            raise HTTPException(400, "Give an index or a direction")
    except SessionClosed as e:
        raise HTTPException(409, str(e))
    save_runner(ctx.progress, ctx.user.sub, runner)
    ctx.remember_view("session", s.id, runner.current_index)
    return {"current_index": runner.current_index, "question_id": runner.current_question_id}

@router.post("/{session_id}/submit")
def submit(session_id: str, payload: Optional[SubmitIn] = None, ctx: Context = Depends()):
    s = ctx.session(session_id)
    if s.ended_at is not None:
        return _result(ctx, s)
    runner = ctx.runner(s)
    if payload and payload.answers and runner.accepting_input:
        try:
            for qid, letter in payload.answers.items():
                runner.answer(qid, letter)
        except ValueError as e:
            raise HTTPException(400, str(e))
    try:
        result = runner.end_session(lambda answers: submit_session(ctx.store, s.id, answers, ctx.clock()))
    except SubmissionFailed as e:
        save_runner(ctx.progress, ctx.user.sub, runner)
        raise HTTPException(503, detail={
            "message": "Your answers could not be saved. Please try again.",
            "retryable": True, "score": e.graded.score, "total": e.graded.total,
        })
    except RedisError as e:
        logger.error("Submission latch unavailable for %s: %s", s.id, e)
        raise HTTPException(503, detail={"message": "Submission is temporarily unavailable.", "retryable": True})
    if result is None:
        s = ctx.store.get_session(session_id, ctx.user.sub)
        if s.ended_at is not None:
            return _result(ctx, s)
        raise HTTPException(409, "Submission already in progress")
    ctx.progress.delete(progress_key(ctx.user.sub, s.id))
    ctx.remember_view("results", s.id)
    return _result(ctx, ctx.store.get_session(session_id, ctx.user.sub))

@router.delete("/{session_id}/correction")
def cancel_correction(session_id: str, ctx: Context = Depends()):
    s = ctx.session(session_id)
    return {"session_id": s.id, "cancelled": ctx.jobs.cancel_correction(s.id)}
