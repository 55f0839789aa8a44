"""
Policy Bootstrap — the first decision matrix version and default prompts.

A fresh store is seeded with v1.0, produced either by a generator
collaborator (a language model asked for a JSON policy document, sanitized
here) or by the built-in baseline policy.
"""

import json
import logging
from datetime import datetime
from typing import Optional, Protocol, Union

from matrix_kernel.models.matrix import (
    ActionType,
    Attribute,
    AttributeType,
    ComparisonCondition,
    DecisionMatrix,
    EqualityCondition,
    MembershipCondition,
    Rule,
    RuleAction,
)
from matrix_kernel.policy.sanitize import (
    load_json_document,
    sanitize_attributes,
    sanitize_rule,
)
from matrix_kernel.policy.store import PolicyStore

logger = logging.getLogger(__name__)

INITIAL_VERSION = "1.0"
MATRIX_GENERATION_PROMPT_ID = "decision-matrix-generation"
LEARNING_SUGGESTION_PROMPT_ID = "learning-suggestion"


class PolicyGenerator(Protocol):
    """Collaborator that drafts a policy document from a prompt."""

    def generate_policy(self, prompt: str) -> str:
        ...


def baseline_attributes() -> list:
    return [
        Attribute(
            name="frequency",
            type=AttributeType.CATEGORICAL,
            possible_values=["hourly", "daily", "weekly", "monthly", "quarterly", "yearly", "rare"],
            weight=0.8,
            description="How often the process runs",
        ),
        Attribute(
            name="business_value",
            type=AttributeType.CATEGORICAL,
            possible_values=["low", "medium", "high", "critical"],
            weight=0.9,
            description="Impact of the process on business outcomes",
        ),
        Attribute(
            name="complexity",
            type=AttributeType.CATEGORICAL,
            possible_values=["low", "medium", "high", "very_high"],
            weight=0.8,
            description="How much judgment and variation the process involves",
        ),
        Attribute(
            name="risk",
            type=AttributeType.CATEGORICAL,
            possible_values=["low", "medium", "high", "critical"],
            weight=0.9,
            description="Risk if the process is automated and goes wrong",
        ),
        Attribute(
            name="user_count",
            type=AttributeType.NUMERIC,
            weight=0.4,
            description="Number of people involved in or affected by the process",
        ),
        Attribute(
            name="data_sensitivity",
            type=AttributeType.CATEGORICAL,
            possible_values=["public", "internal", "confidential", "restricted"],
            weight=0.7,
            description="Sensitivity of the data the process handles",
        ),
    ]


def baseline_rules() -> list:
    return [
        Rule(
            rule_id="baseline-critical-risk-review",
            name="Critical risk requires review",
            description="Processes with critical automation risk go to a human",
            conditions=[EqualityCondition(attribute="risk", operator="==", value="critical")],
            action=RuleAction(
                type=ActionType.FLAG_REVIEW,
                rationale="Critical-risk processes must be reviewed before automation.",
            ),
            priority=90,
        ),
        Rule(
            rule_id="baseline-sensitive-data",
            name="Sensitive data lowers confidence",
            description="Confidential or restricted data makes automation less certain",
            conditions=[
                MembershipCondition(
                    attribute="data_sensitivity",
                    operator="in",
                    value=["confidential", "restricted"],
                )
            ],
            action=RuleAction(
                type=ActionType.ADJUST_CONFIDENCE,
                confidence_adjustment=-0.1,
                rationale="Sensitive data adds compliance constraints to automation.",
            ),
            priority=80,
        ),
        Rule(
            rule_id="baseline-repetitive-rpa",
            name="Repetitive simple work suits RPA",
            description="Frequent, low-complexity, low-risk processes",
            conditions=[
                MembershipCondition(attribute="frequency", operator="in", value=["hourly", "daily", "weekly"]),
                EqualityCondition(attribute="complexity", operator="==", value="low"),
                MembershipCondition(attribute="risk", operator="in", value=["low", "medium"]),
            ],
            action=RuleAction(
                type=ActionType.OVERRIDE,
                target_category="RPA",
                rationale="High-frequency, rule-based work with low risk is a classic RPA candidate.",
            ),
            priority=70,
        ),
        Rule(
            rule_id="baseline-complex-high-value",
            name="Complex high-value work suits an AI agent",
            description="Judgment-heavy processes with high business value",
            conditions=[
                MembershipCondition(attribute="complexity", operator="in", value=["high", "very_high"]),
                MembershipCondition(attribute="business_value", operator="in", value=["high", "critical"]),
                MembershipCondition(attribute="risk", operator="not_in", value=["critical"]),
            ],
            action=RuleAction(
                type=ActionType.OVERRIDE,
                target_category="AI Agent",
                rationale="Complex, valuable work benefits from AI assistance with human oversight.",
            ),
            priority=60,
        ),
        Rule(
            rule_id="baseline-low-value-eliminate",
            name="Rare low-value work can be eliminated",
            description="Processes that rarely run and deliver little value",
            conditions=[
                EqualityCondition(attribute="business_value", operator="==", value="low"),
                MembershipCondition(attribute="frequency", operator="in", value=["yearly", "rare"]),
            ],
            action=RuleAction(
                type=ActionType.OVERRIDE,
                target_category="Eliminate",
                rationale="Low-value processes that rarely run are candidates for removal.",
            ),
            priority=50,
        ),
        Rule(
            rule_id="baseline-wide-reach",
            name="Wide reach raises confidence",
            description="Processes touching many users",
            conditions=[ComparisonCondition(attribute="user_count", operator=">=", value=200)],
            action=RuleAction(
                type=ActionType.ADJUST_CONFIDENCE,
                confidence_adjustment=0.05,
                rationale="Large user bases make the transformation case clearer.",
            ),
            priority=20,
        ),
    ]


def baseline_policy(created_at: Optional[datetime] = None) -> DecisionMatrix:
    """The built-in v1.0 policy used when no generator is available."""
    return DecisionMatrix(
        version=INITIAL_VERSION,
        created_at=created_at or datetime.utcnow(),
        created_by="ai",
        description="Baseline decision matrix for transformation category classification",
        attributes=baseline_attributes(),
        rules=baseline_rules(),
        active=True,
    )


def parse_policy_document(
    document: Union[str, dict],
    version: str = INITIAL_VERSION,
    created_by: str = "ai",
    created_at: Optional[datetime] = None,
) -> DecisionMatrix:
    """
    Turn a generated policy document into a DecisionMatrix.

    Raises ValueError if the document is not a JSON object with attributes
    and rules. Everything below that level is sanitized, not rejected.
    """
    if isinstance(document, str):
        try:
            document = load_json_document(document)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Failed to parse decision matrix document: {exc}") from exc
    if not isinstance(document, dict):
        raise ValueError("Decision matrix document must be a JSON object")

    raw_rules = document.get("rules")
    if not isinstance(document.get("attributes"), list) or not isinstance(raw_rules, list):
        raise ValueError("Decision matrix document needs 'attributes' and 'rules' arrays")

    attributes = sanitize_attributes(document["attributes"])
    by_name = {a.name: a for a in attributes}

    rules = []
    for raw in raw_rules:
        rule = sanitize_rule(
            raw,
            by_name,
            invalid_category_delta=0.0,
            reserved_ids={r.rule_id for r in rules},
        )
        if rule is not None:
            rules.append(rule)

    logger.info(
        "Parsed matrix: %d attributes, %d valid rules (%d rules filtered out)",
        len(attributes),
        len(rules),
        len(raw_rules) - len(rules),
        extra={"policy_version": version},
    )
    return DecisionMatrix(
        version=version,
        created_at=created_at or datetime.utcnow(),
        created_by=created_by,
        description=document.get("description")
        or "AI-generated baseline decision matrix for transformation category classification",
        attributes=attributes,
        rules=rules,
        active=True,
    )


def ensure_initial_policy(
    store: PolicyStore, generator: Optional[PolicyGenerator] = None
) -> DecisionMatrix:
    """Return the latest policy, creating v1.0 if the store is empty."""
    existing = store.get_latest()
    if existing is not None:
        return existing

    seed_prompts(store)
    if generator is not None:
        prompt = store.get_prompt(MATRIX_GENERATION_PROMPT_ID)
        matrix = parse_policy_document(generator.generate_policy(prompt))
    else:
        matrix = baseline_policy()

    store.save_version(matrix)
    logger.info("Created initial decision matrix", extra={"policy_version": matrix.version})
    return matrix


def seed_prompts(store: PolicyStore) -> None:
    """Store the default prompt templates unless a version already exists."""
    for prompt_id, content in DEFAULT_PROMPTS.items():
        if not store.list_prompt_versions(prompt_id):
            store.save_prompt(prompt_id, content)


def _attribute_reference() -> str:
    lines = []
    for attribute in baseline_attributes():
        if attribute.possible_values:
            values = ", ".join(attribute.possible_values)
            lines.append(f"   - {attribute.name}: {attribute.description} ({attribute.type.value}: {values})")
        else:
            lines.append(f"   - {attribute.name}: {attribute.description} ({attribute.type.value})")
    return "\n".join(lines)


MATRIX_GENERATION_PROMPT = f"""Generate a decision matrix for classifying business processes into six transformation categories:
1. Eliminate - Remove unnecessary processes
2. Simplify - Streamline and reduce complexity
3. Digitise - Convert manual/offline work to digital
4. RPA - Robotic Process Automation for repetitive tasks
5. AI Agent - AI-powered assistance with human oversight
6. Agentic AI - Autonomous AI decision-making

1. Attributes (weights 0-1):
{_attribute_reference()}

2. Rules: conditions (attribute + operator + value, AND-combined), an action
   (override with targetCategory, adjust_confidence with confidenceAdjustment,
   or flag_review), a priority 0-100 (higher = evaluated first) and a rationale.

Only use the attribute names and values listed above.
Only use the categories: Eliminate, Simplify, Digitise, RPA, AI Agent, Agentic AI.
Only use the operators: ==, !=, >, <, >=, <=, in, not_in.

Return ONLY a JSON object:
{{"description": "...", "attributes": [...], "rules": [...]}}
"""

LEARNING_SUGGESTION_PROMPT = """Based on the analysis above, suggest 2-5 improvements to the decision matrix.

Each suggestion needs a type (new_rule, modify_rule or adjust_weight), a
rationale, an impactEstimate (affectedCategories, expectedImprovementPercent
0-100, confidenceLevel 0.0-1.0) and a suggestedChange:
- new_rule: {"newRule": {rule}}
- modify_rule: {"ruleId": "existing-rule-id", "modifiedRule": {rule}}
- adjust_weight: {"attributeName": "frequency", "newWeight": 0.8}

Rules:
1. Only reference attributes that exist in the current matrix.
2. Condition values must come from the attribute's possibleValues.
3. Do not suggest new attributes.
4. targetCategory must be one of: Eliminate, Simplify, Digitise, RPA, AI Agent, Agentic AI.
5. Do not duplicate existing rules; modify them instead.

Return only a JSON array of suggestions.
"""

DEFAULT_PROMPTS = {
    MATRIX_GENERATION_PROMPT_ID: MATRIX_GENERATION_PROMPT,
    LEARNING_SUGGESTION_PROMPT_ID: LEARNING_SUGGESTION_PROMPT,
}
