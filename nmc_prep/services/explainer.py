"""
AI explanation service: single-question corrections, batch re-verification
and topic question generation over OpenAI chat completions.
"""
from __future__ import annotations

import json
import logging
from typing import List, Optional, Protocol, Sequence

from openai import OpenAI
from pydantic import BaseModel, Field, ValidationError

from nmc_prep.core.config import settings
from nmc_prep.services.exceptions import GeneratorUnavailable

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful medical and health education assistant preparing nurses for the "
    "NMC computer based test. You check multiple-choice questions and explain answers "
    "clearly and accurately."
)


class SingleCorrection(BaseModel):
    is_answer_correct: bool = Field(alias="isAnswerCorrect")
    correct_answer_letter: str = Field(alias="correctAnswerLetter")
    explanation: str

    model_config = {"populate_by_name": True}


class BatchCorrectionItem(BaseModel):
    id: str
    correct_answer_letter: str = Field(alias="correctAnswerLetter")
    explanation: str

    model_config = {"populate_by_name": True}


class GeneratedQuestion(BaseModel):
    question_text: str = Field(alias="questionText")
    options: List[str]
    correct_answer_letter: str = Field(alias="correctAnswerLetter")
    explanation: str
    topic: str

    model_config = {"populate_by_name": True}


def _object(properties: dict, required: list[str]) -> dict:
    return {"type": "object", "properties": properties, "required": required, "additionalProperties": False}


SINGLE_SCHEMA = _object(
    {
        "isAnswerCorrect": {"type": "boolean"},
        "correctAnswerLetter": {"type": "string"},
        "explanation": {"type": "string"},
    },
    ["isAnswerCorrect", "correctAnswerLetter", "explanation"],
)

# structured output needs an object at the root, so arrays ride under "items"
BATCH_SCHEMA = _object(
    {"items": {"type": "array", "items": _object(
        {"id": {"type": "string"}, "correctAnswerLetter": {"type": "string"}, "explanation": {"type": "string"}},
        ["id", "correctAnswerLetter", "explanation"],
    )}},
    ["items"],
)

GENERATION_SCHEMA = _object(
    {"items": {"type": "array", "items": _object(
        {
            "questionText": {"type": "string"},
            "options": {"type": "array", "items": {"type": "string"}},
            "correctAnswerLetter": {"type": "string"},
            "explanation": {"type": "string"},
            "topic": {"type": "string"},
        },
        ["questionText", "options", "correctAnswerLetter", "explanation", "topic"],
    )}},
    ["items"],
)


def format_options(options: Sequence[str]) -> str:
    return "\n".join(f"{chr(65 + i)}. {opt}" for i, opt in enumerate(options))


class Provider(Protocol):
    name: str

    def complete(self, system: str, prompt: str, schema: dict) -> str: ...


class OpenAIChatProvider:
    """One model behind the chat completions API with a JSON schema response format."""

    def __init__(self, model: str, client: Optional[OpenAI] = None):
        self.name = model
        self.model = model
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            key = settings.OPENAI_API_KEY.get_secret_value() if settings.OPENAI_API_KEY else None
            self._client = OpenAI(api_key=key, timeout=settings.OPENAI_TIMEOUT_SECONDS, max_retries=0)
        return self._client

    def complete(self, system: str, prompt: str, schema: dict) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            temperature=settings.OPENAI_TEMPERATURE,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": schema, "strict": True},
            },
        )
        content = response.choices[0].message.content
        if not content:
            raise ValueError(f"{self.model} returned an empty response")
        return content


class FallbackChain:
    """Try providers in order; the first one that answers wins."""

    def __init__(self, providers: Sequence[Provider]):
        if not providers:
            raise ValueError("FallbackChain needs at least one provider")
        self.providers = list(providers)

    @property
    def name(self) -> str:
        return " -> ".join(p.name for p in self.providers)

    def complete(self, system: str, prompt: str, schema: dict) -> str:
        errors = []
        for provider in self.providers:
            try:
                return provider.complete(system, prompt, schema)
            except Exception as e:
                logger.warning("Provider %s failed: %s", provider.name, e)
                errors.append(f"{provider.name}: {e}")
        raise GeneratorUnavailable(errors)


def default_chain() -> FallbackChain:
    models = [m for m in (settings.OPENAI_MODEL, settings.OPENAI_FALLBACK_MODEL) if m]
    return FallbackChain([OpenAIChatProvider(m) for m in dict.fromkeys(models)])


class ExplanationGenerator:
    def __init__(self, provider: Optional[Provider] = None):
        self.provider = provider or default_chain()

    def explain(self, question) -> SingleCorrection:
        """Check the stored answer of one question and explain the correct one."""
        prompt = (
            f"Question: {question.question_text}\n\n"
            f"Options:\n{format_options(question.options)}\n\n"
            f"Stored correct answer: {question.correct_answer_letter}\n\n"
            "Decide whether the stored answer is correct. Give the correct answer letter and "
            "provide a brief explanation (about 5 sentences) of why it is correct and why the "
            "other options are not."
        )
        raw = self.provider.complete(SYSTEM_PROMPT, prompt, SINGLE_SCHEMA)
        try:
            result = SingleCorrection.model_validate_json(raw)
        except ValidationError as e:
            raise ValueError(f"Malformed explanation response: {e}") from e
        return result.model_copy(update={"correct_answer_letter": result.correct_answer_letter.strip().upper()})

    def correct_batch(self, questions: Sequence) -> str:
        """
        Ask for a corrected letter and explanation for each question.

        Returns the raw JSON array text; the corrector parses and validates it.
        """
        blocks = []
        for q in questions:
            blocks.append(
                f"id: {q.id}\nQuestion: {q.question_text}\nOptions:\n{format_options(q.options)}\n"
                f"Stored answer: {q.correct_answer_letter}"
            )
        prompt = (
            f"Review the following {len(questions)} questions. For each one return its id, the "
            "correct answer letter and a brief explanation (about 5 sentences). Return exactly one "
            "item per question, in the same order.\n\n" + "\n\n".join(blocks)
        )
        raw = self.provider.complete(SYSTEM_PROMPT, prompt, BATCH_SCHEMA)
        return unwrap_items(raw)

    def generate_topic_questions(self, topics: Sequence[str], count: int) -> list[GeneratedQuestion]:
        prompt = (
            f"Write {count} new multiple-choice questions for nurses sitting the NMC test, spread "
            f"across these topics: {', '.join(topics)}. Each question has 4 or 5 options, one correct "
            "answer letter, a brief explanation (about 5 sentences) and the topic it belongs to."
        )
        raw = self.provider.complete(SYSTEM_PROMPT, prompt, GENERATION_SCHEMA)
        items = json.loads(unwrap_items(raw))
        out = []
        for item in items:
            try:
                out.append(GeneratedQuestion.model_validate(item))
            except ValidationError as e:
                logger.warning("Dropping malformed generated question: %s", e)
        return out


def unwrap_items(raw: str) -> str:
    """Turn {"items": [...]} into the bare array text. Anything else passes through unchanged."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        return json.dumps(data["items"])
    return raw
