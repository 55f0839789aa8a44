"""Evaluation Result — the explainable trace of one rule-layer pass."""

from typing import Any, Dict, List

from matrix_kernel.models.base import WireModel
from matrix_kernel.models.classification import Classification
from matrix_kernel.models.matrix import RuleAction


class TriggeredRule(WireModel):
    rule_id: str
    rule_name: str
    action: RuleAction                      # Sanitized copy of the rule's action


class EvaluationResult(WireModel):
    """
    Produced fresh per request and never persisted by the kernel.
    Every category/confidence change is attributable to an entry in
    ``triggered_rules`` or to the weighted-score fallback noted in the rationale.
    """

    policy_version: str
    original_classification: Classification
    extracted_attributes: Dict[str, Any] = {}
    triggered_rules: List[TriggeredRule] = []
    final_classification: Classification
    overridden: bool = False
