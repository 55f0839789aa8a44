"""
Rule Evaluator — applies a decision matrix to an LLM classification.

Behavioral Contract:
- Pure: the same matrix, classification and attributes always yield the same
  EvaluationResult. No clock, no randomness, no I/O.
- Active rules run in descending priority; ties keep their order in the matrix.
- Conditions are AND-combined. A condition on a missing attribute is false.
- The first matching override wins and stops evaluation.
- adjust_confidence and flag_review compound; confidence is clamped after each.
- The weighted-score fallback runs only when rules matched but none overrode.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from matrix_kernel.models.classification import (
    CATEGORY_ORDER,
    Classification,
    TransformationCategory,
)
from matrix_kernel.models.evaluation import EvaluationResult, TriggeredRule
from matrix_kernel.models.matrix import (
    FLAG_REVIEW_CONFIDENCE,
    ActionType,
    Condition,
    DecisionMatrix,
    Rule,
)

logger = logging.getLogger(__name__)

OVERRIDE_MARGIN = 0.2
SUGGESTION_FLOOR = 0.5

# Hand-tuned per-category deltas, keyed by attribute then value.
SCORE_DELTAS: Dict[str, Dict[Tuple[str, ...], Dict[str, float]]] = {
    "business_value": {
        ("low",): {"Eliminate": 0.3, "Simplify": 0.2},
        ("medium",): {"Simplify": 0.2, "Digitise": 0.3, "RPA": 0.2},
        ("high", "critical"): {"RPA": 0.2, "AI Agent": 0.3, "Agentic AI": 0.3},
    },
    "complexity": {
        ("low",): {"Simplify": 0.2, "Digitise": 0.3, "RPA": 0.3},
        ("medium",): {"Digitise": 0.2, "RPA": 0.3, "AI Agent": 0.2},
        ("high", "very_high"): {"AI Agent": 0.3, "Agentic AI": 0.3},
    },
    "frequency": {
        ("daily",): {"RPA": 0.3, "AI Agent": 0.2, "Agentic AI": 0.2},
        ("weekly",): {"RPA": 0.2, "AI Agent": 0.2},
        ("monthly", "quarterly"): {"Digitise": 0.2, "RPA": 0.1},
    },
    "risk": {
        ("critical", "high"): {"RPA": -0.2, "AI Agent": -0.3, "Agentic AI": -0.4, "Simplify": 0.2},
        ("low",): {"RPA": 0.2, "AI Agent": 0.2, "Agentic AI": 0.2},
    },
}


def _same_value(left: Any, right: Any) -> bool:
    """Equality without Python's bool/int crossover (True != 1 here)."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def evaluate_condition(condition: Condition, attributes: Mapping[str, Any]) -> bool:
    """Evaluate one condition. Never raises; anything unusable is false."""
    value = attributes.get(condition.attribute)
    if value is None:
        return False

    operator = condition.operator
    if operator == "==":
        return _same_value(value, condition.value)
    if operator == "!=":
        return not _same_value(value, condition.value)
    if operator in ("in", "not_in"):
        found = any(_same_value(value, candidate) for candidate in condition.value)
        return found if operator == "in" else not found

    try:
        actual = float(value)
    except (TypeError, ValueError):
        return False
    expected = condition.value
    if operator == ">":
        return actual > expected
    if operator == "<":
        return actual < expected
    if operator == ">=":
        return actual >= expected
    if operator == "<=":
        return actual <= expected
    return False


def conditions_match(rule: Rule, attributes: Mapping[str, Any]) -> bool:
    return all(evaluate_condition(c, attributes) for c in rule.conditions)


def apply_action(rule: Rule, classification: Classification) -> Tuple[Classification, bool]:
    """Apply one rule's action. Returns the new classification and whether it overrode."""
    action = rule.action

    if action.type == ActionType.OVERRIDE:
        if action.target_category is None:
            return classification, False
        return classification.model_copy(update={
            "category": action.target_category,
            "rationale": (
                f"{classification.rationale}\n\n"
                f"Overridden by decision matrix rule: {action.rationale}"
            ),
        }), True

    if action.type == ActionType.ADJUST_CONFIDENCE:
        if action.confidence_adjustment is None:
            return classification, False
        confidence = max(0.0, min(1.0, classification.confidence + action.confidence_adjustment))
        return classification.model_copy(update={
            "confidence": confidence,
            "rationale": (
                f"{classification.rationale}\n\n"
                f"Confidence adjusted by decision matrix rule: {action.rationale}"
            ),
        }), False

    if action.type == ActionType.FLAG_REVIEW:
        return classification.model_copy(update={
            "confidence": FLAG_REVIEW_CONFIDENCE,
            "rationale": (
                f"{classification.rationale}\n\n"
                f"Flagged for manual review: {action.rationale}"
            ),
        }), False

    return classification, False


def calculate_weighted_scores(attributes: Mapping[str, Any]) -> Dict[str, float]:
    """
    Per-category scores from business_value, complexity, frequency and risk,
    normalized by the maximum score and floored at 0.
    """
    scores = {category: 0.0 for category in CATEGORY_ORDER}
    for attribute, table in SCORE_DELTAS.items():
        value = attributes.get(attribute)
        for values, deltas in table.items():
            if value in values:
                for category, delta in deltas.items():
                    scores[category] += delta
                break

    top = max(scores.values())
    if top > 0:
        scores = {category: max(0.0, score / top) for category, score in scores.items()}
    return scores


def suggested_category(scores: Mapping[str, float]) -> Optional[str]:
    """The first strictly highest-scoring category, if it clears the floor."""
    best_score = 0.0
    best = None
    for category in CATEGORY_ORDER:
        score = scores.get(category, 0.0)
        if score > best_score:
            best_score = score
            best = category
    return best if best_score > SUGGESTION_FLOOR else None


class RuleEvaluator:
    """Stateless evaluator; safe to share across concurrent requests."""

    def evaluate(
        self,
        matrix: DecisionMatrix,
        classification: Classification,
        attributes: Mapping[str, Any],
    ) -> EvaluationResult:
        # Stable sort keeps matrix order for equal priorities
        rules = sorted(matrix.active_rules(), key=lambda r: r.priority, reverse=True)

        triggered: List[TriggeredRule] = []
        current = classification
        overridden = False

        for rule in rules:
            if not conditions_match(rule, attributes):
                continue

            triggered.append(TriggeredRule(
                rule_id=rule.rule_id,
                rule_name=rule.name,
                action=rule.action,
            ))
            current, did_override = apply_action(rule, current)
            overridden = overridden or did_override

            if rule.action.type == ActionType.OVERRIDE:
                break

        if not overridden and triggered:
            current, overridden = self._weighted_fallback(current, attributes)

        if overridden:
            logger.debug(
                "Classification overridden: %s -> %s",
                classification.category.value,
                current.category.value,
                extra={"policy_version": matrix.version},
            )

        return EvaluationResult(
            policy_version=matrix.version,
            original_classification=classification,
            extracted_attributes=dict(attributes),
            triggered_rules=triggered,
            final_classification=current,
            overridden=overridden,
        )

    def _weighted_fallback(
        self, classification: Classification, attributes: Mapping[str, Any]
    ) -> Tuple[Classification, bool]:
        scores = calculate_weighted_scores(attributes)
        suggestion = suggested_category(scores)
        current_category = classification.category.value
        if suggestion is None or suggestion == current_category:
            return classification, False

        # Rounded to drop float noise so an exact 0.2 gap never overrides
        margin = round(scores[suggestion] - scores.get(current_category, 0.0), 9)
        if margin <= OVERRIDE_MARGIN:
            return classification, False

        return classification.model_copy(update={
            "category": TransformationCategory(suggestion),
            "rationale": (
                f"{classification.rationale}\n\n"
                f"Decision matrix weighted scoring suggested {suggestion} "
                f"based on extracted attributes."
            ),
        }), True
