"""
Background re-verification of question answers and explanations.

Questions not yet edited are sent to the explanation generator in fixed-size
batches, strictly one batch after another. A batch is all-or-nothing: if any
item fails validation, or the write fails, the whole batch is retried with
exponential backoff, and after the last attempt it is recorded as permanently
failed and the run moves on to the next batch.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence, Union

from nmc_prep.core.config import settings
from nmc_prep.services.exceptions import CorrectionValidationError
from nmc_prep.services.question_store import AppliedCorrections, Correction

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
MAX_ATTEMPTS = 5
BASE_DELAY_SECONDS = 15.0

VALID_LETTERS = frozenset("ABCDE")
MIN_EXPLANATION_LENGTH = 10
MAX_EXPLANATION_LENGTH = 2000
SUSPICIOUS_PHRASES = (
    "i cannot",
    "i am unable",
    "as an ai",
    "error occurred",
    "something went wrong",
    "try again",
)


class CancelToken(Protocol):
    def is_cancelled(self) -> bool: ...


class EventCancelToken:
    """In-process token backed by a threading.Event."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class BatchState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Success:
    attempts: int
    written: int = 0
    skipped: int = 0
    conflicts: int = 0


@dataclass(frozen=True)
class PermanentFailure:
    reason: str
    attempts: int


@dataclass(frozen=True)
class Cancelled:
    attempts: int = 0


BatchOutcome = Union[Success, PermanentFailure, Cancelled]


@dataclass
class CorrectionTally:
    total_processed: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    def as_dict(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }


def validate_correction(item, batch: dict, seen: set) -> list[str]:
    """Return the problems with one response item; an empty list means it is usable."""
    if not isinstance(item, dict):
        return ["item is not an object"]
    qid = item.get("id")
    if not isinstance(qid, str) or not qid.strip():
        return ["missing id"]
    qid = qid.strip()
    if qid not in batch:
        return [f"{qid}: id not in batch"]
    if qid in seen:
        return [f"{qid}: duplicate id"]
    errors = []
    letter = item.get("correctAnswerLetter")
    letter = letter.strip().upper() if isinstance(letter, str) else ""
    if letter not in VALID_LETTERS:
        errors.append(f"{qid}: invalid letter {item.get('correctAnswerLetter')!r}")
    elif letter not in batch[qid].letters():
        errors.append(f"{qid}: letter {letter} has no matching option")
    explanation = item.get("explanation")
    explanation = explanation.strip() if isinstance(explanation, str) else ""
    if len(explanation) < MIN_EXPLANATION_LENGTH:
        errors.append(f"{qid}: explanation too short")
    elif len(explanation) > MAX_EXPLANATION_LENGTH:
        errors.append(f"{qid}: explanation too long")
    else:
        lowered = explanation.lower()
        hit = next((p for p in SUSPICIOUS_PHRASES if p in lowered), None)
        if hit:
            errors.append(f"{qid}: explanation contains {hit!r}")
    return errors


def parse_batch_response(raw: str, questions: Sequence) -> list[Correction]:
    """Parse and validate a batch response; raises CorrectionValidationError on any problem."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise CorrectionValidationError([f"response is not JSON: {e}"]) from e
    if not isinstance(data, list):
        raise CorrectionValidationError(["response is not an array"])
    if len(data) != len(questions):
        raise CorrectionValidationError([f"expected {len(questions)} items, got {len(data)}"])
    batch = {q.id: q for q in questions}
    seen: set = set()
    errors: list[str] = []
    corrections = []
    for item in data:
        problems = validate_correction(item, batch, seen)
        if problems:
            errors.extend(problems)
            continue
        qid = item["id"].strip()
        seen.add(qid)
        q = batch[qid]
        corrections.append(Correction(
            question_id=qid,
            expected_version=q.version,
            correct_answer_letter=item["correctAnswerLetter"].strip().upper(),
            explanation=item["explanation"].strip(),
        ))
    if errors:
        raise CorrectionValidationError(errors)
    return corrections


def is_noop(correction: Correction, question) -> bool:
    return (
        correction.correct_answer_letter == (question.correct_answer_letter or "").upper()
        and correction.explanation == (question.explanation or "").strip()
    )


class BackgroundCorrector:
    def __init__(
        self,
        generator,
        store,
        cancel_token: Optional[CancelToken] = None,
        sleep: Callable[[float], None] = time.sleep,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        on_batch: Optional[Callable[[int, BatchOutcome, CorrectionTally], None]] = None,
    ):
        self.generator = generator
        self.store = store
        self.cancel_token = cancel_token or EventCancelToken()
        self.sleep = sleep
        self.batch_size = batch_size or settings.CORRECTION_BATCH_SIZE or BATCH_SIZE
        self.max_attempts = max_attempts or settings.CORRECTION_MAX_ATTEMPTS or MAX_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.CORRECTION_BASE_DELAY_SECONDS
        self.on_batch = on_batch

    def delay_for(self, attempt: int) -> float:
        """Delay before attempt `attempt + 1`."""
        return self.base_delay * 2 ** (attempt - 1)

    def cancelled(self) -> bool:
        try:
            return self.cancel_token.is_cancelled()
        except Exception as e:
            logger.warning("Could not read cancellation flag, continuing: %s", e)
            return False

    def run(self, questions: Sequence) -> CorrectionTally:
        tally = CorrectionTally()
        pending = [q for q in questions if not q.is_edited]
        if not pending:
            logger.info("No unedited questions to verify")
            return tally
        batches = [pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
        logger.info("Verifying %d questions in %d batches", len(pending), len(batches))

        for n, batch in enumerate(batches, start=1):
            if self.cancelled():
                tally.cancelled = True
                break
            try:
                outcome = self.run_batch(batch)
            except Exception as e:
                logger.exception("Batch %d crashed", n)
                outcome = PermanentFailure(reason=f"unexpected error: {e}", attempts=0)

            if isinstance(outcome, Cancelled):
                tally.cancelled = True
                logger.info("Correction cancelled during batch %d", n)
                break
            tally.total_processed += len(batch)
            if isinstance(outcome, Success):
                tally.total_succeeded += len(batch)
            else:
                tally.total_failed += len(batch)
                tally.errors.append(f"batch {n}: {outcome.reason}")
                logger.error("Batch %d permanently failed after %d attempts: %s", n, outcome.attempts, outcome.reason)
            if self.on_batch:
                self.on_batch(n, outcome, tally)

        logger.info(
            "Correction finished: processed=%d succeeded=%d failed=%d cancelled=%s",
            tally.total_processed, tally.total_succeeded, tally.total_failed, tally.cancelled,
        )
        return tally

    def run_batch(self, batch: Sequence) -> BatchOutcome:
        state = BatchState.PENDING
        attempt = 0
        raw = None
        last_error = ""
        applied = AppliedCorrections()
        skipped = 0

        while True:
            if state is BatchState.PENDING:
                if self.cancelled():
                    state = BatchState.CANCELLED
                    continue
                attempt += 1
                logger.debug("Batch attempt %d/%d (%d questions)", attempt, self.max_attempts, len(batch))
                try:
                    raw = self.generator.correct_batch(batch)
                except Exception as e:
                    last_error = f"generator error: {e}"
                    state = BatchState.FAILED
                    continue
                # a late answer after cancellation is thrown away
                state = BatchState.CANCELLED if self.cancelled() else BatchState.VALIDATING

            elif state is BatchState.VALIDATING:
                try:
                    corrections = parse_batch_response(raw, batch)
                    by_id = {q.id: q for q in batch}
                    changes = [c for c in corrections if not is_noop(c, by_id[c.question_id])]
                    skipped = len(corrections) - len(changes)
                    applied = self.store.apply_corrections(changes) if changes else AppliedCorrections()
                except CorrectionValidationError as e:
                    last_error = f"invalid response: {e}"
                    state = BatchState.FAILED
                except Exception as e:
                    last_error = f"write failed: {e}"
                    state = BatchState.FAILED
                else:
                    state = BatchState.SUCCEEDED

            elif state is BatchState.FAILED:
                if attempt >= self.max_attempts:
                    state = BatchState.PERMANENTLY_FAILED
                    continue
                delay = self.delay_for(attempt)
                logger.warning("Batch attempt %d failed (%s); retrying in %.0fs", attempt, last_error, delay)
                self.sleep(delay)
                state = BatchState.PENDING

            elif state is BatchState.SUCCEEDED:
                return Success(attempts=attempt, written=applied.written, skipped=skipped, conflicts=applied.conflicts)
            elif state is BatchState.PERMANENTLY_FAILED:
                return PermanentFailure(reason=last_error, attempts=attempt)
            else:
                return Cancelled(attempts=attempt)
