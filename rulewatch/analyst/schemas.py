"""
Pydantic schemas for relevance scoring with Instructor.

These schemas enforce structured JSON output from the LLM.
"""

import logging

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

UNPARSEABLE = "unparseable"


class RelevanceVerdict(BaseModel):
    """How well one post matches a rule's criteria."""
    score: float = Field(
        description="Relevance of the post to the criteria, from 0.0 (unrelated) to 1.0 (exact match)"
    )
    explanation: str = Field(
        default="",
        description="One or two sentences explaining the score"
    )

    @field_validator("score", mode="before")
    @classmethod
    def normalize_score(cls, v) -> float:
        """Bring the score into [0, 1].

        Models occasionally answer on a 0-10 or 0-100 scale. Those are
        rescaled rather than capped, so "5/10" stays a 0.5.
        """
        score = float(v)
        if score != score:  # NaN
            raise ValueError("score is NaN")
        if score > 100.0:
            raise ValueError(f"score {score} is out of range")
        if score > 10.0:
            logger.debug(f"Rescaling 0-100 relevance score {score}")
            score = score / 100.0
        elif score > 1.0:
            logger.debug(f"Rescaling 0-10 relevance score {score}")
            score = score / 10.0
        return max(0.0, score)


class Classification(BaseModel):
    """Result handed to the scheduler. Never raised, only returned."""
    relevance_score: float = 0.0
    explanation: str = UNPARSEABLE

    @classmethod
    def unparseable(cls) -> "Classification":
        return cls(relevance_score=0.0, explanation=UNPARSEABLE)

    @classmethod
    def from_verdict(cls, verdict: RelevanceVerdict) -> "Classification":
        return cls(relevance_score=verdict.score, explanation=verdict.explanation)
