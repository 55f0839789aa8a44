"""Classification — the six transformation categories and the LLM's judgment."""

import logging
from enum import Enum
from typing import Any, List

from pydantic import Field

from matrix_kernel.models.base import WireModel

logger = logging.getLogger(__name__)


class TransformationCategory(str, Enum):
    """Ordered from least to most automation (ordinal order matters)."""
    ELIMINATE = "Eliminate"
    SIMPLIFY = "Simplify"
    DIGITISE = "Digitise"
    RPA = "RPA"
    AI_AGENT = "AI Agent"
    AGENTIC_AI = "Agentic AI"


CATEGORY_ORDER: List[str] = [c.value for c in TransformationCategory]


def is_valid_category(value: Any) -> bool:
    return isinstance(value, str) and value in CATEGORY_ORDER


def category_rank(value: str) -> int:
    """Ordinal position of a category; -1 for unknown values."""
    try:
        return CATEGORY_ORDER.index(value)
    except ValueError:
        return -1


def coerce_target_category(value: Any, context: str = "") -> Any:
    """
    Collapse an array-valued targetCategory to its first element.

    Upstream generators sometimes emit ``["RPA", "Digitise"]`` where a single
    category is expected. Anything else is returned untouched.
    """
    if isinstance(value, (list, tuple)):
        first = value[0] if value else None
        logger.warning(
            "%s had targetCategory as array, using first value: %s",
            context or "Rule action",
            first,
        )
        return first
    return value


class Classification(WireModel):
    """Output of the external classifier. Read-only input to the evaluator."""

    category: TransformationCategory
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    category_progression: str = ""
    future_opportunities: str = ""
