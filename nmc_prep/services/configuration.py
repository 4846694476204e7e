from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

from nmc_prep.services.exceptions import ConfigurationError

__all__ = ["QUESTION_COUNTS", "CATEGORIES", "TOPICS", "SessionConfig", "build_config", "time_limit_minutes"]

QUESTION_COUNTS = (15, 20, 30, 50)
DEFAULT_COUNT = QUESTION_COUNTS[0]

COMBINED = "Combined"
MEDICINE_ONLY = "Medicine Only"
SURGERY_ONLY = "Surgery Only"
TOPIC_PRACTICE = "Topics"
CATEGORIES = (COMBINED, MEDICINE_ONLY, SURGERY_ONLY, TOPIC_PRACTICE)

# category selection -> value of Question.category (None = no filter)
CATEGORY_FILTERS = {COMBINED: None, MEDICINE_ONLY: "medicine", SURGERY_ONLY: "surgery", TOPIC_PRACTICE: None}

TOPICS = (
    "Cardiovascular",
    "Complex Care Concepts",
    "Endocrine/Metabolic",
    "Ethical/Legal",
    "Eye, Ear, Nose, And Throat",
    "Fluids & Electrolytes/Acid-Base Balance",
    "Fundamentals",
    "Gastrointestinal",
    "Hematology/Oncology",
    "Immunology/Infectious Disease",
    "Integumentary",
    "Maternal & Newborn Health",
    "Medication Calculation",
    "Mental Health",
    "Musculoskeletal",
    "Neurological",
    "Pediatric Health",
    "Pharmacology",
    "Prioritization/Delegation",
    "Renal/Genitourinary",
    "Respiratory",
    "Vital Signs And Laboratory Values",
)

MINUTES_PER_QUESTION = 1.2


def time_limit_minutes(count: int) -> int:
    # half-up rounding, not banker's
    return int(math.floor(count * MINUTES_PER_QUESTION + 0.5))


@dataclass(frozen=True)
class SessionConfig:
    count: int
    category: str
    topics: tuple[str, ...] = field(default_factory=tuple)

    @property
    def time_limit_seconds(self) -> int:
        return time_limit_minutes(self.count) * 60

    @property
    def category_filter(self) -> str | None:
        return CATEGORY_FILTERS[self.category]

    @property
    def is_topic_practice(self) -> bool:
        return self.category == TOPIC_PRACTICE


def build_config(count: int = DEFAULT_COUNT, category: str = COMBINED, topics: Sequence[str] | None = None) -> SessionConfig:
    """
    Validate form input and produce a session configuration.

    Topic practice needs at least one topic from TOPICS; the other categories
    ignore topics entirely.
    """
    if count not in QUESTION_COUNTS:
        raise ConfigurationError(f"count must be one of {list(QUESTION_COUNTS)}")
    if category not in CATEGORIES:
        raise ConfigurationError(f"category must be one of {list(CATEGORIES)}")
    chosen: tuple[str, ...] = ()
    if category == TOPIC_PRACTICE:
        chosen = tuple(dict.fromkeys(topics or ()))
        if not chosen:
            raise ConfigurationError("Please select at least one topic.")
        unknown = [t for t in chosen if t not in TOPICS]
        if unknown:
            raise ConfigurationError(f"Unknown topics: {', '.join(unknown)}")
    return SessionConfig(count=count, category=category, topics=chosen)
