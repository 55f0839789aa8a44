"""
Sanitization of untrusted rule data.

Policy documents and rule suggestions arrive from a language model and are
treated like untrusted network input: every field is checked against the
closed vocabularies of the policy before a model object is built. Shape
problems are corrected or dropped with a warning, never raised.
"""

import json
import logging
import re
from typing import Any, Collection, Dict, List, Optional
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from matrix_kernel.models.classification import coerce_target_category, is_valid_category
from matrix_kernel.models.matrix import (
    ActionType,
    Attribute,
    AttributeType,
    Condition,
    Rule,
    RuleAction,
)

logger = logging.getLogger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 100
DEFAULT_PRIORITY = 50

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_condition_adapter = TypeAdapter(Condition)


def strip_code_fences(text: str) -> str:
    """Return the body of the first markdown code block, or the trimmed text."""
    text = text.strip()
    match = _FENCED.search(text)
    return match.group(1) if match else text


def load_json_document(text: str) -> Any:
    """Parse JSON that may be wrapped in a markdown code block."""
    return json.loads(strip_code_fences(text))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_priority(raw: Any) -> int:
    try:
        priority = int(round(float(raw)))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_PRIORITY
    return int(clamp(priority, MIN_PRIORITY, MAX_PRIORITY))


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def sanitize_action(
    raw: Any,
    invalid_category_delta: float,
    context: str = "Rule",
) -> Optional[RuleAction]:
    """
    Build a RuleAction from untrusted data.

    An array targetCategory collapses to its first element. An unknown
    category, or an override with no category at all, is downgraded to
    adjust_confidence with ``invalid_category_delta``. Returns None when the
    action type itself is unusable.
    """
    if not isinstance(raw, dict):
        logger.warning("%s has no usable action, skipping", context)
        return None

    action_type = raw.get("type")
    target = coerce_target_category(_first(raw, "targetCategory", "target_category"), context)
    adjustment = _first(raw, "confidenceAdjustment", "confidence_adjustment")
    rationale = raw.get("rationale") or ""

    needs_downgrade = (target is not None and not is_valid_category(target)) or (
        action_type == ActionType.OVERRIDE.value and target is None
    )
    if needs_downgrade:
        logger.warning(
            "%s has invalid targetCategory %r, defaulting to adjust_confidence",
            context,
            target,
        )
        action_type = ActionType.ADJUST_CONFIDENCE.value
        adjustment = invalid_category_delta
        target = None

    if adjustment is not None:
        try:
            adjustment = float(adjustment)
        except (TypeError, ValueError):
            adjustment = None

    try:
        return RuleAction(
            type=action_type,
            target_category=target,
            confidence_adjustment=adjustment,
            rationale=str(rationale),
        )
    except ValidationError as exc:
        logger.warning("%s has an invalid action (%s), skipping", context, exc.errors()[0]["msg"])
        return None


def sanitize_condition(
    raw: Any,
    attributes: Dict[str, Attribute],
    context: str = "Rule",
) -> Optional[Condition]:
    """
    Validate one condition against the policy's attributes.
    Returns None for unknown attributes, bad operators and out-of-vocabulary
    categorical values.
    """
    if not isinstance(raw, dict):
        return None

    name = raw.get("attribute")
    attribute = attributes.get(name) if isinstance(name, str) else None
    if attribute is None:
        logger.warning("%s references non-existent attribute %r, skipping condition", context, name)
        return None

    data = {"attribute": name, "operator": raw.get("operator"), "value": raw.get("value")}
    if data["operator"] in ("in", "not_in") and not isinstance(data["value"], (list, tuple)):
        data["value"] = [data["value"]]

    try:
        condition = _condition_adapter.validate_python(data)
    except ValidationError:
        logger.warning(
            "%s has malformed condition %s %r %r, skipping condition",
            context,
            name,
            data["operator"],
            data["value"],
        )
        return None

    if attribute.type == AttributeType.CATEGORICAL:
        values = condition.value if isinstance(condition.value, list) else [condition.value]
        invalid = [v for v in values if v not in attribute.possible_values]
        if invalid:
            logger.warning(
                "%s uses invalid values %s for attribute %r. Valid values: %s",
                context,
                invalid,
                name,
                attribute.possible_values,
            )
            return None
    return condition


def sanitize_rule(
    raw: Any,
    attributes: Dict[str, Attribute],
    invalid_category_delta: float,
    reserved_ids: Collection[str] = (),
    default_rule_id: Optional[str] = None,
) -> Optional[Rule]:
    """
    Build a Rule from untrusted data, or None if nothing usable is left.

    A rule whose conditions were all dropped is discarded; a rule that never
    had conditions is kept. A ruleId is generated when missing or when it
    collides with ``reserved_ids``.
    """
    if not isinstance(raw, dict):
        return None

    name = raw.get("name") or "Unnamed rule"
    context = f'Rule "{name}"'

    raw_conditions = raw.get("conditions") or []
    if not isinstance(raw_conditions, list):
        raw_conditions = []
    conditions = []
    for raw_condition in raw_conditions:
        condition = sanitize_condition(raw_condition, attributes, context)
        if condition is not None:
            conditions.append(condition)
    if raw_conditions and not conditions:
        logger.warning("%s has no valid conditions, skipping rule", context)
        return None

    action = sanitize_action(raw.get("action"), invalid_category_delta, context)
    if action is None:
        return None

    rule_id = _first(raw, "ruleId", "rule_id") or default_rule_id
    if not isinstance(rule_id, str) or not rule_id or rule_id in reserved_ids:
        rule_id = str(uuid4())

    return Rule(
        rule_id=str(rule_id),
        name=str(name),
        description=str(raw.get("description") or ""),
        conditions=conditions,
        action=action,
        priority=clamp_priority(raw.get("priority", DEFAULT_PRIORITY)),
        active=raw.get("active") is not False,
    )


def sanitize_attributes(raw_attributes: Any) -> List[Attribute]:
    """Build attributes with weights clamped to [0, 1]; malformed entries are dropped."""
    attributes = []
    seen = set()
    for raw in raw_attributes or []:
        if not isinstance(raw, dict):
            continue
        data = dict(raw)
        try:
            data["weight"] = clamp(float(data.get("weight", 0.5)), 0.0, 1.0)
        except (TypeError, ValueError):
            data["weight"] = 0.5
        try:
            attribute = Attribute.model_validate(data)
        except ValidationError as exc:
            logger.warning("Skipping invalid attribute %r: %s", raw.get("name"), exc.errors()[0]["msg"])
            continue
        if attribute.name in seen:
            logger.warning("Skipping duplicate attribute %r", attribute.name)
            continue
        seen.add(attribute.name)
        attributes.append(attribute)
    return attributes
