"""
Classification Pipeline — text in, explainable classification out.

raw text -> classifier collaborator -> attribute extraction
(collaborator, heuristic fallback) -> Rule Evaluator over the latest policy.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from matrix_kernel.errors import CollaboratorUnavailableError, PolicyNotFoundError
from matrix_kernel.evaluation.evaluator import RuleEvaluator
from matrix_kernel.evaluation.extractor import HeuristicExtractor
from matrix_kernel.models.classification import Classification
from matrix_kernel.models.evaluation import EvaluationResult
from matrix_kernel.models.matrix import DecisionMatrix
from matrix_kernel.policy.store import PolicyStore

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """Language-model classifier. Opaque to the kernel."""

    def classify(self, text: str, context: Optional[dict] = None) -> Classification:
        ...


class AttributeExtractor(Protocol):
    def extract_attributes(self, text: str, context: Optional[dict] = None) -> Dict[str, Any]:
        ...


class ClassificationPipeline:
    """
    Wires the classifier and extractor collaborators to the rule layer.
    Each request reads one policy snapshot and never writes.
    """

    def __init__(
        self,
        store: PolicyStore,
        classifier: Optional[Classifier] = None,
        attribute_extractor: Optional[AttributeExtractor] = None,
        evaluator: Optional[RuleEvaluator] = None,
    ):
        self.store = store
        self.classifier = classifier
        self.attribute_extractor = attribute_extractor
        self.evaluator = evaluator or RuleEvaluator()
        self._fallback = HeuristicExtractor()

    def resolve_policy(self, policy: Optional[DecisionMatrix] = None) -> DecisionMatrix:
        if policy is not None:
            return policy
        latest = self.store.get_latest()
        if latest is None:
            raise PolicyNotFoundError("No decision matrix has been created yet")
        return latest

    def evaluate(
        self,
        classification: Classification,
        attributes: Dict[str, Any],
        policy: Optional[DecisionMatrix] = None,
    ) -> EvaluationResult:
        return self.evaluator.evaluate(self.resolve_policy(policy), classification, attributes)

    def extract_attributes(self, text: str, context: Optional[dict] = None) -> Dict[str, Any]:
        """Collaborator extraction, falling back to keyword heuristics on failure."""
        if self.attribute_extractor is not None:
            try:
                return dict(self.attribute_extractor.extract_attributes(text, context))
            except Exception as exc:
                logger.warning("Attribute extraction failed, using heuristics: %s", exc)
        return self._fallback.extract_attributes(text, context)

    def classify_text(
        self,
        text: str,
        context: Optional[dict] = None,
        policy: Optional[DecisionMatrix] = None,
    ) -> EvaluationResult:
        if self.classifier is None:
            raise CollaboratorUnavailableError("No classifier is configured")
        matrix = self.resolve_policy(policy)
        classification = self.classifier.classify(text, context)
        attributes = self.extract_attributes(text, context)
        return self.evaluator.evaluate(matrix, classification, attributes)
