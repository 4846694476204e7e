import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError, model_validator

from nmc_prep.api.deps import get_generator, get_store
from nmc_prep.core.auth import require_roles
from nmc_prep.services.configuration import TOPICS
from nmc_prep.services.exceptions import GeneratorUnavailable

logger = logging.getLogger(__name__)

router = APIRouter()

class QuestionIn(BaseModel):
    id: Optional[str] = None
    question_text: str = Field(min_length=1)
    options: List[str] = Field(min_length=2)
    correct_answer_letter: str = Field(min_length=1, max_length=1)
    explanation: Optional[str] = None
    category: str
    topic: Optional[str] = None
    is_ai_generated: bool = False

    @model_validator(mode="after")
    def letter_indexes_options(self):
        self.correct_answer_letter = self.correct_answer_letter.upper()
        if not 0 <= ord(self.correct_answer_letter) - 65 < len(self.options):
            raise ValueError(f"correct_answer_letter {self.correct_answer_letter} does not match any option")
        return self

class ImportResult(BaseModel):
    inserted: int
    ids: List[str]
    rejected: List[dict]

class GenerateIn(BaseModel):
    topics: List[str] = Field(min_length=1)
    count: int = Field(ge=1, le=20, default=5)
    category: str = "topics"

def _record(q: QuestionIn) -> dict:
    data = q.model_dump(exclude_none=True)
    return data

@router.post("/import", response_model=ImportResult, dependencies=[Depends(require_roles("admin", "author"))])
def import_questions(payload: List[Any], store=Depends(get_store)):
    """Seed import. Malformed records are skipped and reported, the rest are inserted."""
    valid, rejected = [], []
    for i, raw in enumerate(payload):
        try:
            valid.append(_record(QuestionIn.model_validate(raw)))
        except ValidationError as e:
            rejected.append({"index": i, "errors": [err["msg"] for err in e.errors()]})
    inserted = store.insert_questions(valid) if valid else []
    if rejected:
        logger.warning("Question import skipped %d of %d records", len(rejected), len(payload))
    return ImportResult(inserted=len(inserted), ids=[q.id for q in inserted], rejected=rejected)

@router.post("/generate", response_model=ImportResult, dependencies=[Depends(require_roles("admin", "author"))])
def generate_questions(payload: GenerateIn, store=Depends(get_store), generator=Depends(get_generator)):
    unknown = [t for t in payload.topics if t not in TOPICS]
    if unknown:
        raise HTTPException(400, f"Unknown topics: {', '.join(unknown)}")
    try:
        generated = generator.generate_topic_questions(payload.topics, payload.count)
    except GeneratorUnavailable as e:
        raise HTTPException(502, str(e))
    except ValueError as e:
        raise HTTPException(502, f"Generator returned an unusable response: {e}")
    valid, rejected = [], []
    for i, g in enumerate(generated):
        try:
            q = QuestionIn(question_text=g.question_text, options=g.options, correct_answer_letter=g.correct_answer_letter,
                           explanation=g.explanation, category=payload.category, topic=g.topic, is_ai_generated=True)
        except ValidationError as e:
            rejected.append({"index": i, "errors": [err["msg"] for err in e.errors()]})
            continue
        valid.append(_record(q))
    inserted = store.insert_questions(valid) if valid else []
    return ImportResult(inserted=len(inserted), ids=[q.id for q in inserted], rejected=rejected)
