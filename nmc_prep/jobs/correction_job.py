import logging
from typing import Callable, Optional

from rq import get_current_job

from nmc_prep.core.cache import RedisCancellationToken
from nmc_prep.core.database import SessionLocal
from nmc_prep.models.orm import CorrectionRun, utcnow
from nmc_prep.services.corrector import BackgroundCorrector
from nmc_prep.services.explainer import ExplanationGenerator
from nmc_prep.services.question_store import QuestionStore

logger = logging.getLogger(__name__)


def run_status(tally) -> str:
    if tally.cancelled:
        return "cancelled"
    return "partial" if tally.total_failed else "done"


def run_correction(db, session_id: str, generator, cancel_token, sleep: Optional[Callable] = None, job=None) -> CorrectionRun:
    """Verify a session's questions and record the run. Never raises on batch failures."""
    store = QuestionStore(db)
    run = CorrectionRun(session_id=session_id, status="running", started_at=utcnow())
    db.add(run); db.commit()

    def progress(n, outcome, tally):
        if job is not None:
            job.meta.update({"batches_done": n, **tally.as_dict()}); job.save_meta()

    try:
        questions = [sq.question for sq in store.session_items(session_id)]
        kwargs = {"sleep": sleep} if sleep is not None else {}
        corrector = BackgroundCorrector(generator, store, cancel_token, on_batch=progress, **kwargs)
        tally = corrector.run(questions)
    except Exception as e:
        db.rollback()
        run.status = "failed"; run.errors = [str(e)]; run.finished_at = utcnow()
        db.commit()
        raise
    run.status = run_status(tally)
    run.total_processed = tally.total_processed
    run.total_succeeded = tally.total_succeeded
    run.total_failed = tally.total_failed
    run.errors = list(tally.errors)
    run.finished_at = utcnow()
    db.commit()
    if tally.total_failed:
        logger.error("Correction run %s for session %s left %d questions unverified", run.id, session_id, tally.total_failed)
    return run


def correct_session_questions(session_id: str):
    job = get_current_job()
    if job is not None:
        job.meta.update({"state": "running"}); job.save_meta()
    token = RedisCancellationToken(session_id)
    db = SessionLocal()
    try:
        run = run_correction(db, session_id, ExplanationGenerator(), token, job=job)
        result = {"run_id": run.id, "status": run.status, "processed": run.total_processed, "failed": run.total_failed}
    except Exception:
        if job is not None:
            job.meta.update({"state": "failed"}); job.save_meta()
        raise
    finally:
        db.close()
    if job is not None:
        job.meta.update({"state": run.status}); job.save_meta()
    return result
