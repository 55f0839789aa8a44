"""
Heuristic Attribute Extractor — keyword rules over the process description.

Local fallback for when the language-model extractor is unavailable. Pure:
text in, flat attribute map out.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from matrix_kernel.models.learning import ClarificationQA

# (value, keywords) pairs; the first pair with a matching keyword wins.
KeywordTable = Sequence[Tuple[str, Tuple[str, ...]]]

FREQUENCY: KeywordTable = (
    ("daily", ("daily", "every day")),
    ("weekly", ("weekly", "every week")),
    ("monthly", ("monthly", "every month")),
    ("quarterly", ("quarterly",)),
    ("yearly", ("yearly", "annually")),
)

BUSINESS_VALUE: KeywordTable = (
    ("critical", ("critical", "essential", "vital")),
    ("high", ("high value", "important")),
    ("low", ("low value", "minor")),
)

COMPLEXITY: KeywordTable = (
    ("very_high", ("very complex", "extremely complex")),
    ("high", ("complex", "complicated")),
    ("low", ("simple", "straightforward")),
)

# "low risk" must be tested before the bare "risk" keyword.
RISK: KeywordTable = (
    ("critical", ("critical risk", "high risk")),
    ("low", ("low risk",)),
    ("high", ("risky", "risk")),
    ("low", ("safe",)),
)

DATA_SENSITIVITY: KeywordTable = (
    ("confidential", ("confidential", "sensitive")),
    ("restricted", ("restricted", "classified")),
    ("internal", ("internal",)),
)

CURRENT_STATE: KeywordTable = (
    ("manual", ("manual", "by hand", "on paper")),
    ("digital", ("digital", "online", "software", "automated")),
)

DATA_SOURCE: KeywordTable = (
    ("paper", ("paper", "printed", "forms")),
    ("spreadsheet", ("spreadsheet", "excel")),
    ("email", ("email", "e-mail", "inbox")),
    ("database", ("database", "sql")),
    ("system", ("system", "erp", "crm")),
)

PAIN_POINT: KeywordTable = (
    ("time_consuming", ("time consuming", "time-consuming", "takes hours", "slow")),
    ("error_prone", ("error", "mistake", "rework")),
)

_USER_COUNT = re.compile(r"(\d+)\s*(?:users?|people|employees)")
_STEP_COUNT = re.compile(r"(\d+)\s*steps?\b")
_SYSTEM_COUNT = re.compile(r"(\d+)\s*(?:systems|applications|apps|tools)\b")


def _match(text: str, table: KeywordTable) -> Optional[str]:
    for value, keywords in table:
        if any(keyword in text for keyword in keywords):
            return value
    return None


def _match_int(text: str, pattern: "re.Pattern") -> Optional[int]:
    match = pattern.search(text)
    return int(match.group(1)) if match else None


def build_text(process_description: str, clarifications: Iterable[ClarificationQA] = ()) -> str:
    parts: List[str] = [process_description]
    for qa in clarifications:
        parts.append(f"{qa.question} {qa.answer}")
    return " ".join(parts).lower()


def extract_attributes(
    process_description: str,
    clarifications: Iterable[ClarificationQA] = (),
) -> Dict[str, Any]:
    """
    Derive a flat attribute map from the description and clarification answers.
    business_value, complexity, risk and data_sensitivity always get a value.
    """
    text = build_text(process_description, clarifications)
    attributes: Dict[str, Any] = {}

    frequency = _match(text, FREQUENCY)
    if frequency:
        attributes["frequency"] = frequency

    attributes["business_value"] = _match(text, BUSINESS_VALUE) or "medium"
    attributes["complexity"] = _match(text, COMPLEXITY) or "medium"
    attributes["risk"] = _match(text, RISK) or "medium"

    user_count = _match_int(text, _USER_COUNT)
    if user_count is not None:
        attributes["user_count"] = user_count

    attributes["data_sensitivity"] = _match(text, DATA_SENSITIVITY) or "public"

    for name, table in (
        ("current_state", CURRENT_STATE),
        ("data_source", DATA_SOURCE),
        ("pain_point", PAIN_POINT),
    ):
        value = _match(text, table)
        if value:
            attributes[name] = value

    for name, pattern in (("step_count", _STEP_COUNT), ("system_count", _SYSTEM_COUNT)):
        value = _match_int(text, pattern)
        if value is not None:
            attributes[name] = value

    return attributes


class HeuristicExtractor:
    """Adapter exposing extract_attributes through the extractor collaborator interface."""

    def extract_attributes(self, text: str, context: Optional[dict] = None) -> Dict[str, Any]:
        clarifications = (context or {}).get("clarifications") or []
        return extract_attributes(
            text,
            [ClarificationQA.model_validate(qa) if isinstance(qa, dict) else qa for qa in clarifications],
        )
