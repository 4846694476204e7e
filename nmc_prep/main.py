"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nmc_prep.api.admin_runs import router as runs_router
from nmc_prep.api.auth import router as auth_router
from nmc_prep.api.questions import router as questions_router
from nmc_prep.api.review import router as review_router
from nmc_prep.api.sessions import router as sessions_router
from nmc_prep.core.config import settings
from nmc_prep.core.database import SessionLocal, init_db
from nmc_prep.core.logging import configure_logging
from nmc_prep.jobs.queue import jobs
from nmc_prep.services.auth_state import AuthEventKind, auth_service
from nmc_prep.services.question_store import QuestionStore

logger = logging.getLogger(__name__)

RECENT_SESSIONS = 5

def cancel_corrections_on_sign_out(event, state, session_factory=SessionLocal, job_queue=jobs):
    """Background verification stops when its user signs out."""
    if event.kind is not AuthEventKind.SIGNED_OUT or not event.user_id:
        return
    db = session_factory()
    try:
        for s in QuestionStore(db).list_sessions(event.user_id, limit=RECENT_SESSIONS):
            job_queue.cancel_correction(s.id)
    finally:
        db.close()

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting %s %s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    init_db()
    auth_service.init()
    unsubscribe = auth_service.subscribe(cancel_corrections_on_sign_out)
    yield
    unsubscribe()
    auth_service.teardown()
    logger.info("Shutdown complete")

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
app.include_router(auth_router, prefix=f"{settings.API_V1_PREFIX}/auth", tags=["auth"])
app.include_router(sessions_router, prefix=f"{settings.API_V1_PREFIX}/sessions", tags=["sessions"])
app.include_router(review_router, prefix=f"{settings.API_V1_PREFIX}/review", tags=["review"])
app.include_router(questions_router, prefix=f"{settings.API_V1_PREFIX}/questions", tags=["questions"])
app.include_router(runs_router, prefix=f"{settings.API_V1_PREFIX}/admin", tags=["correction-runs"])

@app.get("/health")
def health(): return {"status": "ok", "version": settings.APP_VERSION}
