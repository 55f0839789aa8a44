"""
Decision Matrix — the versioned policy of attributes and rules.

A DecisionMatrix is never mutated once written. Changing a rule or an
attribute weight means producing a new matrix with a higher version that
carries the replaced objects.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import ConfigDict, Field, StrictBool, StrictInt, field_validator, model_validator

from matrix_kernel.models.base import WireModel
from matrix_kernel.models.classification import TransformationCategory, coerce_target_category
from matrix_kernel.policy.versioning import parse_version

ScalarValue = Union[StrictBool, StrictInt, float, str]


class AttributeType(str, Enum):
    CATEGORICAL = "categorical"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"


class ActionType(str, Enum):
    OVERRIDE = "override"                     # Replace the category, stop evaluation
    ADJUST_CONFIDENCE = "adjust_confidence"   # Add a signed delta, clamped to [0, 1]
    FLAG_REVIEW = "flag_review"               # Force confidence down for manual review


FLAG_REVIEW_CONFIDENCE = 0.3


class Attribute(WireModel):
    """A named, typed input dimension used by rules and scoring."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: AttributeType
    possible_values: Optional[List[str]] = None   # Required iff categorical
    weight: float = Field(ge=0.0, le=1.0, default=0.5)
    description: str = ""

    @model_validator(mode="after")
    def _check_possible_values(self) -> "Attribute":
        if self.type == AttributeType.CATEGORICAL and not self.possible_values:
            raise ValueError(f"Categorical attribute '{self.name}' requires possibleValues")
        if self.type != AttributeType.CATEGORICAL and self.possible_values:
            raise ValueError(f"Only categorical attributes carry possibleValues ('{self.name}')")
        return self


class EqualityCondition(WireModel):
    model_config = ConfigDict(frozen=True)

    attribute: str
    operator: Literal["==", "!="]
    value: ScalarValue


class ComparisonCondition(WireModel):
    """Numeric comparison; both sides are coerced to numbers."""

    model_config = ConfigDict(frozen=True)

    attribute: str
    operator: Literal[">", "<", ">=", "<="]
    value: float


class MembershipCondition(WireModel):
    """Set membership; the value is always an explicit list."""

    model_config = ConfigDict(frozen=True)

    attribute: str
    operator: Literal["in", "not_in"]
    value: List[ScalarValue]


Condition = Annotated[
    Union[EqualityCondition, ComparisonCondition, MembershipCondition],
    Field(discriminator="operator"),
]

CONDITION_OPERATORS = ("==", "!=", ">", "<", ">=", "<=", "in", "not_in")


class RuleAction(WireModel):
    """What a matching rule does to the running classification."""

    model_config = ConfigDict(frozen=True)

    type: ActionType
    target_category: Optional[TransformationCategory] = None
    confidence_adjustment: Optional[float] = None
    rationale: str = ""

    @field_validator("target_category", mode="before")
    @classmethod
    def _collapse_array_category(cls, value):
        return coerce_target_category(value)

    @model_validator(mode="after")
    def _override_needs_target(self) -> "RuleAction":
        if self.type == ActionType.OVERRIDE and self.target_category is None:
            raise ValueError("override action requires a targetCategory")
        return self


class Rule(WireModel):
    """A prioritized condition -> action mapping. Conditions are AND-combined."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    name: str
    description: str = ""
    conditions: List[Condition] = []
    action: RuleAction
    priority: int = 50                      # Higher = evaluated first
    active: bool = True


class DecisionMatrix(WireModel):
    """One immutable version of the policy."""

    model_config = ConfigDict(frozen=True)

    version: str
    created_at: datetime
    created_by: str = "ai"                  # "ai" | "admin" | reviewer name
    description: str = ""
    attributes: List[Attribute] = []
    rules: List[Rule] = []
    active: bool = True

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        parse_version(value)
        return value

    def get_attribute(self, name: str) -> Optional[Attribute]:
        return next((a for a in self.attributes if a.name == name), None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return next((r for r in self.rules if r.rule_id == rule_id), None)

    def active_rules(self) -> List[Rule]:
        return [r for r in self.rules if r.active]

    def integrity_violations(self) -> List[str]:
        """
        Conditions of active rules that reference an undefined attribute, or a
        categorical value outside the attribute's possibleValues.
        """
        problems = []
        for rule in self.active_rules():
            for condition in rule.conditions:
                attribute = self.get_attribute(condition.attribute)
                if attribute is None:
                    problems.append(
                        f"Rule '{rule.rule_id}' references unknown attribute "
                        f"'{condition.attribute}'"
                    )
                    continue
                if attribute.type != AttributeType.CATEGORICAL:
                    continue
                values = condition.value if isinstance(condition.value, list) else [condition.value]
                invalid = [v for v in values if v not in attribute.possible_values]
                if invalid:
                    problems.append(
                        f"Rule '{rule.rule_id}' uses values {invalid} outside "
                        f"possibleValues of '{attribute.name}'"
                    )
        return problems
