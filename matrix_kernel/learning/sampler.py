"""
Validation Sampler — counterfactual re-evaluation of past decisions.

Re-runs a uniformly random sample of historical decisions under a candidate
decision matrix and compares the outcome with what the human said was right:

  improved   wrong before, correct under the candidate
  worsened   correct before, wrong under the candidate
  unchanged  correctness did not change

Items run concurrently up to ``max_concurrency``, each bounded by a timeout.
A failed or timed-out item is counted in ``failed`` and excluded from the
other counts. Cancellation is checked between items; a cancelled run raises
instead of returning partial results. Results are advisory only.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, TypeVar
from uuid import uuid4

from matrix_kernel.errors import InsufficientFeedbackError, ValidationCancelledError
from matrix_kernel.evaluation.evaluator import RuleEvaluator
from matrix_kernel.evaluation.extractor import extract_attributes
from matrix_kernel.evaluation.pipeline import AttributeExtractor, Classifier
from matrix_kernel.learning.analyzer import calculate_sample_size, select_records
from matrix_kernel.models.learning import (
    FeedbackRecord,
    ValidationDetail,
    ValidationOutcome,
    ValidationTestResult,
)
from matrix_kernel.models.matrix import DecisionMatrix

logger = logging.getLogger(__name__)

MIN_SAMPLE_FRACTION = 0.10
MAX_SAMPLE_FRACTION = 1.0

T = TypeVar("T")


def fisher_yates_sample(items: Sequence[T], size: int, rng: random.Random) -> List[T]:
    """Uniform sample without replacement via a partial Fisher-Yates shuffle."""
    pool = list(items)
    size = min(size, len(pool))
    for i in range(size):
        j = rng.randrange(i, len(pool))
        pool[i], pool[j] = pool[j], pool[i]
    return pool[:size]


class ValidationSampler:
    """
    Without a classifier the sampler runs in rules-only mode: the stored
    classification is the prior and only the rule layer is re-run.
    """

    def __init__(
        self,
        classifier: Optional[Classifier] = None,
        attribute_extractor: Optional[AttributeExtractor] = None,
        evaluator: Optional[RuleEvaluator] = None,
        sample_fraction: float = MIN_SAMPLE_FRACTION,
        sample_cap: int = 1000,
        max_concurrency: int = 4,
        timeout_seconds: float = 30.0,
        rng: Optional[random.Random] = None,
    ):
        if not MIN_SAMPLE_FRACTION <= sample_fraction <= MAX_SAMPLE_FRACTION:
            raise ValueError(
                f"sample_fraction must be between {MIN_SAMPLE_FRACTION} and "
                f"{MAX_SAMPLE_FRACTION}, got {sample_fraction}"
            )
        if sample_cap < 1:
            raise ValueError("sample_cap must be at least 1")
        self.classifier = classifier
        self.attribute_extractor = attribute_extractor
        self.evaluator = evaluator or RuleEvaluator()
        self.sample_fraction = sample_fraction
        self.sample_cap = sample_cap
        self.max_concurrency = max(1, max_concurrency)
        self.timeout_seconds = timeout_seconds
        self._rng = rng or random.Random()

    @property
    def rules_only(self) -> bool:
        return self.classifier is None

    def population(
        self, records: Sequence[FeedbackRecord], misclassifications_only: bool = False
    ) -> List[FeedbackRecord]:
        """Records with feedback whose correct category is known."""
        selected = select_records(records, misclassifications_only=misclassifications_only)
        return [r for r in selected if r.correct_category is not None]

    def sample_size(self, population_size: int) -> int:
        return calculate_sample_size(population_size, self.sample_fraction, self.sample_cap)

    def draw_sample(self, population: Sequence[FeedbackRecord]) -> List[FeedbackRecord]:
        return fisher_yates_sample(population, self.sample_size(len(population)), self._rng)

    def _attributes_for(self, record: FeedbackRecord) -> Dict[str, Any]:
        if self.attribute_extractor is not None:
            context = {"clarifications": [qa.model_dump() for qa in record.clarifications]}
            return dict(self.attribute_extractor.extract_attributes(record.process_description, context))
        if record.extracted_attributes is not None:
            return dict(record.extracted_attributes)
        return extract_attributes(record.process_description, record.clarifications)

    def evaluate_record(self, candidate: DecisionMatrix, record: FeedbackRecord) -> ValidationDetail:
        """Re-run one decision under the candidate matrix. Synchronous and pure apart from collaborators."""
        original = record.classification
        if self.rules_only:
            prior = original
        else:
            context = {"clarifications": [qa.model_dump() for qa in record.clarifications]}
            prior = self.classifier.classify(record.process_description, context)

        result = self.evaluator.evaluate(candidate, prior, self._attributes_for(record))
        new = result.final_classification
        correct = record.correct_category

        was_correct = original.category.value == correct
        is_correct = new.category.value == correct
        if not was_correct and is_correct:
            outcome = ValidationOutcome.IMPROVED
        elif was_correct and not is_correct:
            outcome = ValidationOutcome.WORSENED
        else:
            outcome = ValidationOutcome.UNCHANGED

        return ValidationDetail(
            record_id=record.record_id,
            original_category=original.category.value,
            original_confidence=original.confidence,
            new_category=new.category.value,
            new_confidence=new.confidence,
            correct_category=correct,
            was_correct_before=was_correct,
            is_correct_now=is_correct,
            outcome=outcome,
        )

    async def validate(
        self,
        candidate: DecisionMatrix,
        records: Sequence[FeedbackRecord],
        cancel_event: Optional[Any] = None,
        misclassifications_only: bool = False,
    ) -> ValidationTestResult:
        """
        Validate ``candidate`` against a sample of ``records``.
        ``cancel_event`` is anything with ``is_set()`` (threading or asyncio Event).
        """
        population = self.population(records, misclassifications_only)
        if not population:
            raise InsufficientFeedbackError(
                "No decisions with a known correct category to validate against",
                version=candidate.version,
            )

        sample = self.draw_sample(population)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        async def run_one(record: FeedbackRecord) -> Optional[ValidationDetail]:
            async with semaphore:
                if cancelled():
                    return None
                try:
                    return await asyncio.wait_for(
                        asyncio.to_thread(self.evaluate_record, candidate, record),
                        timeout=self.timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Validation sample timed out after %ss, excluding",
                        self.timeout_seconds,
                        extra={"record_id": record.record_id, "policy_version": candidate.version},
                    )
                except Exception as exc:
                    logger.warning(
                        "Validation sample failed, excluding: %s",
                        exc,
                        extra={"record_id": record.record_id, "policy_version": candidate.version},
                    )
                return None

        outcomes = await asyncio.gather(*(run_one(record) for record in sample))
        if cancelled():
            raise ValidationCancelledError(
                "Validation run was cancelled", version=candidate.version
            )

        details = [d for d in outcomes if d is not None]
        improved = sum(1 for d in details if d.outcome == ValidationOutcome.IMPROVED)
        worsened = sum(1 for d in details if d.outcome == ValidationOutcome.WORSENED)
        unchanged = len(details) - improved - worsened
        rate = (improved - worsened) / len(details) * 100 if details else 0.0

        result = ValidationTestResult(
            test_id=f"vtest_{uuid4().hex[:12]}",
            tested_at=datetime.utcnow(),
            policy_version=candidate.version,
            sample_size=len(sample),
            sample_percentage=round(len(sample) / len(population) * 100, 1),
            total_tested=len(details),
            improved=improved,
            unchanged=unchanged,
            worsened=worsened,
            failed=len(sample) - len(details),
            improvement_rate_percent=round(rate, 2),
            details=details,
        )
        logger.info(
            "Validated v%s on %d decisions: +%d / -%d (%d failed)",
            candidate.version,
            result.sample_size,
            improved,
            worsened,
            result.failed,
            extra={"policy_version": candidate.version},
        )
        return result
