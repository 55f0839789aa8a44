"""
Suggestion Applier — merges an approved suggestion into the latest matrix.

Never mutates the input matrix. Produces a new matrix with the next minor
version that the caller persists through the Policy Store.
"""

import logging
from datetime import datetime
from typing import Optional

from matrix_kernel.errors import (
    AttributeNotFoundError,
    DuplicateRuleError,
    RuleNotFoundError,
    SuggestionApplyError,
)
from matrix_kernel.models.learning import Suggestion, SuggestionType
from matrix_kernel.models.matrix import DecisionMatrix
from matrix_kernel.policy.versioning import next_minor_version

logger = logging.getLogger(__name__)

DESCRIPTION_RATIONALE_LIMIT = 100


class SuggestionApplier:

    def apply(
        self,
        suggestion: Suggestion,
        latest: DecisionMatrix,
        created_by: str = "admin",
        created_at: Optional[datetime] = None,
    ) -> DecisionMatrix:
        """
        Build the next matrix version from ``latest`` and ``suggestion``.
        Raises a SuggestionApplyError subclass when the suggestion is stale.
        """
        change = suggestion.suggested_change
        attributes = list(latest.attributes)
        rules = list(latest.rules)

        if suggestion.type == SuggestionType.NEW_RULE:
            if change.new_rule is None:
                raise SuggestionApplyError(
                    "new_rule suggestion carries no rule",
                    suggestion_id=suggestion.suggestion_id,
                )
            if latest.get_rule(change.new_rule.rule_id) is not None:
                raise DuplicateRuleError(
                    f"Rule {change.new_rule.rule_id} already exists in v{latest.version}",
                    version=latest.version,
                    rule_id=change.new_rule.rule_id,
                    suggestion_id=suggestion.suggestion_id,
                )
            rules.append(change.new_rule)

        elif suggestion.type == SuggestionType.MODIFY_RULE:
            index = next(
                (i for i, r in enumerate(rules) if r.rule_id == change.rule_id), None
            )
            if index is None or change.modified_rule is None:
                raise RuleNotFoundError(
                    f"Rule {change.rule_id} not found in v{latest.version}",
                    version=latest.version,
                    rule_id=change.rule_id,
                    suggestion_id=suggestion.suggestion_id,
                )
            rules[index] = change.modified_rule.model_copy(update={"rule_id": change.rule_id})

        elif suggestion.type == SuggestionType.ADJUST_WEIGHT:
            index = next(
                (i for i, a in enumerate(attributes) if a.name == change.attribute_name), None
            )
            if index is None or change.new_weight is None:
                raise AttributeNotFoundError(
                    f"Attribute {change.attribute_name} not found in v{latest.version}",
                    version=latest.version,
                    attribute_name=change.attribute_name,
                    suggestion_id=suggestion.suggestion_id,
                )
            attributes[index] = attributes[index].model_copy(update={"weight": change.new_weight})

        new_version = next_minor_version(latest.version)
        logger.info(
            "Applying %s suggestion: v%s -> v%s",
            suggestion.type.value,
            latest.version,
            new_version,
            extra={"suggestion_id": suggestion.suggestion_id, "policy_version": new_version},
        )
        return DecisionMatrix(
            version=new_version,
            created_at=created_at or datetime.utcnow(),
            created_by=created_by,
            description=(
                "Applied learning suggestion: "
                + suggestion.rationale[:DESCRIPTION_RATIONALE_LIMIT]
            ),
            attributes=attributes,
            rules=rules,
            active=True,
        )
