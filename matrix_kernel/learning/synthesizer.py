"""
Suggestion Synthesizer — turns an analysis into reviewed-ready policy changes.

The suggestion collaborator (a language model) is asked for candidate changes;
its output is untrusted. Every candidate passes the sanitization boundary
before it becomes a Suggestion:

1. An array targetCategory collapses to its first element.
2. An invalid targetCategory downgrades the action to adjust_confidence +0.1.
3. priority is clamped to [0, 100].
4. newWeight is clamped to [0, 1].
5. new_attribute candidates are dropped. Attributes are a closed set.
6. Conditions and weight changes may only reference existing attributes.

Collaborator failure, timeout, or unparseable output fails the whole call.
"""

import asyncio
import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union
from uuid import uuid4

from matrix_kernel.errors import CollaboratorUnavailableError, SynthesisError
from matrix_kernel.models.classification import is_valid_category
from matrix_kernel.models.learning import (
    FeedbackRecord,
    ImpactEstimate,
    LearningAnalysis,
    SuggestedChange,
    Suggestion,
    SuggestionStatus,
    SuggestionType,
)
from matrix_kernel.models.matrix import DecisionMatrix
from matrix_kernel.policy.sanitize import clamp, load_json_document, sanitize_rule

logger = logging.getLogger(__name__)

INVALID_CATEGORY_DELTA = 0.1
MAX_PROMPT_RULES = 10
MAX_PROMPT_EXAMPLES = 3


class SuggestionBackend(Protocol):
    """Suggestion collaborator. Returns raw text (usually JSON) or parsed candidates."""

    def synthesize_candidates(self, prompt: str) -> Union[str, List[dict]]:
        ...


def build_suggestion_prompt(
    analysis: LearningAnalysis,
    matrix: DecisionMatrix,
    task: str,
    examples: Sequence[FeedbackRecord] = (),
) -> str:
    """Render the analysis, the current matrix and example decisions for the collaborator."""
    lines = [
        "# Decision Matrix Improvement Analysis",
        "",
        "## Current Performance",
        f"- Overall Agreement Rate: {analysis.overall_agreement_rate * 100:.1f}%",
        f"- Total Decisions Analyzed: {analysis.data_range.total_records}",
        "",
        "## Agreement Rates by Category",
    ]
    for category, rate in analysis.category_agreement_rates.items():
        samples = analysis.category_sample_counts.get(category, 0)
        lines.append(f"- {category}: {rate * 100:.1f}% ({samples} decisions)")

    lines += ["", "## Common Misclassifications"]
    for m in analysis.common_misclassifications[:5]:
        lines.append(f"- {m.from_category} → {m.to_category}: {m.count} occurrences")

    lines += ["", "## Identified Patterns"]
    lines += [f"- {pattern}" for pattern in analysis.identified_patterns]

    lines += ["", f"## Current Decision Matrix (v{matrix.version})", "", "### Attributes"]
    for attribute in matrix.attributes:
        values = f" values: {attribute.possible_values}" if attribute.possible_values else ""
        lines.append(f"- {attribute.name} (weight: {attribute.weight}){values}: {attribute.description}")

    active = matrix.active_rules()
    lines += ["", f"### Active Rules ({len(active)} total)"]
    for rule in active[:MAX_PROMPT_RULES]:
        conditions = json.dumps([c.to_wire() for c in rule.conditions])
        target = rule.action.target_category.value if rule.action.target_category else ""
        lines += [
            "",
            f"Rule: {rule.name} (ruleId: {rule.rule_id})",
            f"- Priority: {rule.priority}",
            f"- Conditions: {conditions}",
            f"- Action: {rule.action.type.value} {target}".rstrip(),
            f"- Rationale: {rule.action.rationale}",
        ]

    if examples:
        lines += ["", f"## Example Misclassified Decisions ({len(examples)} samples)"]
        for record in examples[:MAX_PROMPT_EXAMPLES]:
            lines += [
                "",
                f"Decision {record.record_id}:",
                f"- Process: {record.process_description[:200]}...",
                f"- Classified as: {record.classification.category.value}",
                f"- Should be: {record.correct_category}",
                f"- Confidence: {record.classification.confidence:.2f}",
            ]

    lines += ["", "## Task", "", task]
    return "\n".join(lines)


def parse_candidates(response: Union[str, List[dict], dict]) -> List[dict]:
    """Decode the collaborator's response into a list of raw candidates."""
    if isinstance(response, str):
        try:
            response = load_json_document(response)
        except json.JSONDecodeError as exc:
            raise SynthesisError(f"Suggestion response is not valid JSON: {exc}") from exc
    if isinstance(response, dict):
        response = [response]
    if not isinstance(response, list):
        raise SynthesisError("Suggestion response must be a JSON array of suggestions")
    return response


def _sanitize_impact(raw: Any) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    categories = raw.get("affectedCategories") or []
    if not isinstance(categories, list):
        categories = [categories]

    def number(key: str, default: float, high: float) -> float:
        try:
            value = float(raw.get(key, default))
        except (TypeError, ValueError):
            return default
        return clamp(value, 0.0, high) if math.isfinite(value) else default

    return ImpactEstimate(
        affected_categories=[c for c in categories if is_valid_category(c)],
        expected_improvement_percent=number("expectedImprovementPercent", 0.0, 100.0),
        confidence_level=number("confidenceLevel", 0.5, 1.0),
    ).to_wire()


def sanitize_candidate(raw: Any, matrix: DecisionMatrix) -> Optional[Dict[str, Any]]:
    """
    Validate one raw candidate against the matrix.

    Returns the candidate in canonical wire form, or None if it must be
    dropped. Idempotent: a sanitized candidate passes through unchanged.
    """
    if not isinstance(raw, dict):
        logger.warning("Skipping suggestion that is not an object")
        return None

    kind = raw.get("type")
    if kind == "new_attribute":
        logger.warning(
            "Skipping new_attribute suggestion - attributes are fixed; only existing "
            "attributes may be referenced"
        )
        return None
    if not isinstance(kind, str) or kind not in {t.value for t in SuggestionType}:
        logger.warning("Skipping suggestion with unknown type %r", kind)
        return None

    attributes = {a.name: a for a in matrix.attributes}
    change = raw.get("suggestedChange")
    change = change if isinstance(change, dict) else {}

    if kind == SuggestionType.NEW_RULE.value:
        rule = sanitize_rule(
            change.get("newRule"),
            attributes,
            INVALID_CATEGORY_DELTA,
            reserved_ids={r.rule_id for r in matrix.rules},
        )
        if rule is None:
            logger.warning("Skipping new_rule suggestion without a usable rule")
            return None
        suggested = SuggestedChange(new_rule=rule)

    elif kind == SuggestionType.MODIFY_RULE.value:
        modified = change.get("modifiedRule")
        modified = dict(modified) if isinstance(modified, dict) else None
        rule_id = change.get("ruleId") or (modified or {}).get("ruleId")
        if not isinstance(rule_id, str) or not rule_id or modified is None:
            logger.warning("Skipping modify_rule suggestion without ruleId and modifiedRule")
            return None
        modified["ruleId"] = rule_id
        rule = sanitize_rule(modified, attributes, INVALID_CATEGORY_DELTA)
        if rule is None:
            logger.warning("Skipping modify_rule suggestion for %s without a usable rule", rule_id,
                           extra={"rule_id": rule_id})
            return None
        suggested = SuggestedChange(rule_id=rule_id, modified_rule=rule)

    else:
        name = change.get("attributeName")
        if not isinstance(name, str) or name not in attributes:
            logger.warning("Skipping adjust_weight suggestion for unknown attribute %r", name)
            return None
        try:
            weight = float(change.get("newWeight"))
        except (TypeError, ValueError):
            weight = math.nan
        if not math.isfinite(weight):
            logger.warning("Skipping adjust_weight suggestion without a numeric newWeight")
            return None
        weight = clamp(weight, 0.0, 1.0)
        suggested = SuggestedChange(attribute_name=name, new_weight=weight)

    return {
        "type": kind,
        "rationale": str(raw.get("rationale") or ""),
        "impactEstimate": _sanitize_impact(raw.get("impactEstimate")),
        "suggestedChange": suggested.to_wire(),
    }


class SuggestionSynthesizer:
    """Builds pending Suggestions from collaborator output."""

    def __init__(self, backend: Optional[SuggestionBackend] = None, timeout_seconds: float = 30.0):
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    def synthesize(
        self,
        analysis: LearningAnalysis,
        matrix: DecisionMatrix,
        raw_candidates: List[Any],
    ) -> List[Suggestion]:
        """Sanitize raw candidates into fresh pending suggestions."""
        suggestions = []
        for raw in raw_candidates:
            candidate = sanitize_candidate(raw, matrix)
            if candidate is None:
                continue
            suggestions.append(Suggestion(
                suggestion_id=f"sugg_{uuid4().hex[:12]}",
                analysis_id=analysis.analysis_id,
                created_at=datetime.utcnow(),
                type=SuggestionType(candidate["type"]),
                status=SuggestionStatus.PENDING,
                rationale=candidate["rationale"],
                impact_estimate=ImpactEstimate.model_validate(candidate["impactEstimate"]),
                suggested_change=SuggestedChange.model_validate(candidate["suggestedChange"]),
            ))

        logger.info(
            "Accepted %d of %d suggestion candidates",
            len(suggestions),
            len(raw_candidates),
            extra={"analysis_id": analysis.analysis_id, "policy_version": matrix.version},
        )
        return suggestions

    async def propose(
        self,
        analysis: LearningAnalysis,
        matrix: DecisionMatrix,
        task: str,
        examples: Sequence[FeedbackRecord] = (),
    ) -> List[Suggestion]:
        """Ask the collaborator for candidates, bounded by the timeout."""
        if self.backend is None:
            raise CollaboratorUnavailableError("No suggestion backend is configured")

        prompt = build_suggestion_prompt(analysis, matrix, task, examples)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self.backend.synthesize_candidates, prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise SynthesisError(
                f"Suggestion collaborator timed out after {self.timeout_seconds}s",
                version=matrix.version,
            ) from exc
        except Exception as exc:
            raise SynthesisError(
                f"Suggestion collaborator failed: {exc}",
                version=matrix.version,
            ) from exc

        return self.synthesize(analysis, matrix, parse_candidates(response))
