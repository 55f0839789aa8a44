"""
Learning Engine — the analysis → suggestion → validation → approval loop.

The Iron Rule: the learning loop proposes policy changes, humans decide.
Nothing is written to the Policy Store until a reviewer approves a suggestion.

Flow:
  feedback records → Feedback Analyzer → LearningAnalysis
  LearningAnalysis + latest matrix → Suggestion Synthesizer → pending Suggestions
  Suggestion → candidate matrix → Validation Sampler → ValidationTestResult (advisory)
  approve → Suggestion Applier → new matrix version → Suggestion applied
"""

import logging
import threading
from datetime import datetime
from typing import Any, List, Literal, Optional, Sequence

from matrix_kernel.errors import (
    AnalysisNotFoundError,
    PolicyNotFoundError,
    SuggestionNotFoundError,
    SuggestionStateError,
)
from matrix_kernel.evaluation.pipeline import AttributeExtractor, Classifier
from matrix_kernel.learning.analyzer import FeedbackAnalyzer
from matrix_kernel.learning.applier import SuggestionApplier
from matrix_kernel.learning.feedback import FeedbackSource, InMemoryFeedbackSource
from matrix_kernel.learning.sampler import ValidationSampler
from matrix_kernel.learning.store import LearningStore
from matrix_kernel.learning.synthesizer import SuggestionBackend, SuggestionSynthesizer
from matrix_kernel.models.config import KernelConfig
from matrix_kernel.models.learning import (
    FeedbackRecord,
    LearningAnalysis,
    Suggestion,
    SuggestionStatus,
    ThresholdCheck,
    ValidationTestResult,
)
from matrix_kernel.models.matrix import DecisionMatrix
from matrix_kernel.policy.bootstrap import DEFAULT_PROMPTS, LEARNING_SUGGESTION_PROMPT_ID
from matrix_kernel.policy.store import PolicyStore

logger = logging.getLogger(__name__)

MAX_PROMPT_EXAMPLES = 5


class LearningEngine:
    """
    Orchestrates the learning loop over a policy store and a learning store.
    Enforces the Iron Rule.
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        learning_store: Optional[LearningStore] = None,
        feedback_source: Optional[FeedbackSource] = None,
        classifier: Optional[Classifier] = None,
        attribute_extractor: Optional[AttributeExtractor] = None,
        suggestion_backend: Optional[SuggestionBackend] = None,
        config: Optional[KernelConfig] = None,
        sampler: Optional[ValidationSampler] = None,
    ):
        self.config = config or KernelConfig()
        self.policy_store = policy_store
        self.learning_store = learning_store or LearningStore(self.config.learning_db)
        self.feedback_source = feedback_source or InMemoryFeedbackSource()

        self.analyzer = FeedbackAnalyzer(agreement_threshold=self.config.agreement_threshold)
        self.synthesizer = SuggestionSynthesizer(
            backend=suggestion_backend,
            timeout_seconds=self.config.collaborator_timeout_seconds,
        )
        self.sampler = sampler or ValidationSampler(
            classifier=classifier,
            attribute_extractor=attribute_extractor,
            sample_fraction=self.config.validation_sample_fraction,
            sample_cap=self.config.validation_sample_cap,
            max_concurrency=self.config.max_concurrency,
            timeout_seconds=self.config.collaborator_timeout_seconds,
        )
        self.applier = SuggestionApplier()
        self._apply_lock = threading.Lock()

    # --- Helpers ---

    def _records(self, records: Optional[Sequence[FeedbackRecord]]) -> List[FeedbackRecord]:
        if records is not None:
            return list(records)
        return self.feedback_source.load_feedback_records()

    def _latest_policy(self) -> DecisionMatrix:
        latest = self.policy_store.get_latest()
        if latest is None:
            raise PolicyNotFoundError("No decision matrix has been created yet")
        return latest

    def get_analysis(self, analysis_id: str) -> LearningAnalysis:
        analysis = self.learning_store.get_analysis(analysis_id)
        if analysis is None:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        return analysis

    def get_suggestion(self, suggestion_id: str) -> Suggestion:
        suggestion = self.learning_store.get_suggestion(suggestion_id)
        if suggestion is None:
            raise SuggestionNotFoundError(
                f"Suggestion {suggestion_id} not found", suggestion_id=suggestion_id
            )
        return suggestion

    # --- Analysis ---

    def run_analysis(
        self,
        records: Optional[Sequence[FeedbackRecord]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        triggered_by: Literal["automatic", "manual"] = "manual",
        misclassifications_only: bool = False,
    ) -> LearningAnalysis:
        """Analyze feedback and persist the analysis."""
        analysis = self.analyzer.analyze(
            self._records(records),
            start_date=start_date,
            end_date=end_date,
            triggered_by=triggered_by,
            misclassifications_only=misclassifications_only,
        )
        return self.learning_store.save_analysis(analysis)

    def check_threshold(
        self,
        records: Optional[Sequence[FeedbackRecord]] = None,
        threshold: Optional[float] = None,
    ) -> ThresholdCheck:
        return self.analyzer.check_threshold(self._records(records), threshold)

    # --- Suggestions ---

    def _example_records(self, analysis: LearningAnalysis) -> List[FeedbackRecord]:
        wanted = []
        for misclassification in analysis.common_misclassifications:
            for record_id in misclassification.examples:
                if record_id not in wanted:
                    wanted.append(record_id)
        wanted = wanted[:MAX_PROMPT_EXAMPLES]
        by_id = {r.record_id: r for r in self.feedback_source.load_feedback_records()}
        return [by_id[r] for r in wanted if r in by_id]

    def _store_suggestions(
        self, analysis: LearningAnalysis, suggestions: List[Suggestion]
    ) -> List[Suggestion]:
        for suggestion in suggestions:
            self.learning_store.save_suggestion(suggestion)
        self.learning_store.save_analysis(analysis.model_copy(update={
            "suggestion_ids": analysis.suggestion_ids + [s.suggestion_id for s in suggestions],
        }))
        return suggestions

    def record_suggestions(
        self, analysis: LearningAnalysis, raw_candidates: List[Any]
    ) -> List[Suggestion]:
        """Sanitize raw candidates, persist each suggestion and link them to the analysis."""
        matrix = self._latest_policy()
        suggestions = self.synthesizer.synthesize(analysis, matrix, raw_candidates)
        return self._store_suggestions(analysis, suggestions)

    async def propose_suggestions(self, analysis_id: str) -> List[Suggestion]:
        """
        Ask the suggestion collaborator for changes based on a stored analysis.
        Collaborator failure raises SynthesisError and persists nothing.
        """
        analysis = self.get_analysis(analysis_id)
        matrix = self._latest_policy()
        task = (
            self.policy_store.get_prompt(LEARNING_SUGGESTION_PROMPT_ID)
            or DEFAULT_PROMPTS[LEARNING_SUGGESTION_PROMPT_ID]
        )
        suggestions = await self.synthesizer.propose(
            analysis, matrix, task, self._example_records(analysis)
        )
        return self._store_suggestions(analysis, suggestions)

    def get_pending_suggestions(self) -> List[Suggestion]:
        return self.learning_store.list_suggestions(status=SuggestionStatus.PENDING)

    def get_all_suggestions(
        self,
        status: Optional[SuggestionStatus] = None,
        analysis_id: Optional[str] = None,
    ) -> List[Suggestion]:
        return self.learning_store.list_suggestions(status=status, analysis_id=analysis_id)

    def preview_suggestion(self, suggestion_id: str) -> DecisionMatrix:
        """The matrix that approving this suggestion would produce. Not persisted."""
        suggestion = self.get_suggestion(suggestion_id)
        return self.applier.apply(suggestion, self._latest_policy(), created_by="preview")

    # --- Validation ---

    async def validate_candidate(
        self,
        candidate: DecisionMatrix,
        records: Optional[Sequence[FeedbackRecord]] = None,
        cancel_event: Optional[Any] = None,
        suggestion_id: Optional[str] = None,
        misclassifications_only: bool = False,
    ) -> ValidationTestResult:
        """Counterfactual test of a candidate matrix; the result is persisted for audit."""
        result = await self.sampler.validate(
            candidate,
            self._records(records),
            cancel_event=cancel_event,
            misclassifications_only=misclassifications_only,
        )
        return self.learning_store.save_validation_test(result, suggestion_id=suggestion_id)

    async def validate_suggestion(
        self,
        suggestion_id: str,
        records: Optional[Sequence[FeedbackRecord]] = None,
        cancel_event: Optional[Any] = None,
        misclassifications_only: bool = False,
    ) -> ValidationTestResult:
        candidate = self.preview_suggestion(suggestion_id)
        return await self.validate_candidate(
            candidate,
            records,
            cancel_event=cancel_event,
            suggestion_id=suggestion_id,
            misclassifications_only=misclassifications_only,
        )

    # --- Review (Human-Approved Only) ---

    def approve_suggestion(
        self, suggestion_id: str, reviewer: str, notes: Optional[str] = None
    ) -> DecisionMatrix:
        """
        Human approves a suggestion; it is applied as a new matrix version.

        The new matrix is built first, so a suggestion that no longer fits
        the latest policy (stale ruleId, duplicate id) raises and stays
        pending, where it can still be rejected. Then two-phase: the
        suggestion is marked approved, the new version is written, and only
        then is the suggestion marked applied. If the write fails the
        suggestion stays approved, so approving it again retries.
        """
        with self._apply_lock:
            suggestion = self.get_suggestion(suggestion_id)
            if suggestion.status not in (SuggestionStatus.PENDING, SuggestionStatus.APPROVED):
                raise SuggestionStateError(
                    f"Suggestion {suggestion_id} is {suggestion.status.value} and cannot be approved",
                    suggestion_id=suggestion_id,
                )

            matrix = self.applier.apply(suggestion, self._latest_policy(), created_by="admin")

            suggestion = suggestion.model_copy(update={
                "status": SuggestionStatus.APPROVED,
                "reviewed_by": reviewer,
                "reviewed_at": datetime.utcnow(),
                "review_notes": notes,
            })
            self.learning_store.save_suggestion(suggestion)
            self.policy_store.save_version(matrix)

            self.learning_store.save_suggestion(suggestion.model_copy(update={
                "status": SuggestionStatus.APPLIED,
                "applied_version": matrix.version,
            }))

        logger.info(
            "Suggestion approved by %s and applied as v%s",
            reviewer,
            matrix.version,
            extra={"suggestion_id": suggestion_id, "policy_version": matrix.version},
        )
        return matrix

    def reject_suggestion(
        self, suggestion_id: str, reviewer: str, notes: Optional[str] = None
    ) -> Suggestion:
        """Human rejects a pending suggestion. Any other status is left untouched."""
        suggestion = self.get_suggestion(suggestion_id)
        if suggestion.status != SuggestionStatus.PENDING:
            return suggestion

        suggestion = suggestion.model_copy(update={
            "status": SuggestionStatus.REJECTED,
            "reviewed_by": reviewer,
            "reviewed_at": datetime.utcnow(),
            "review_notes": notes,
        })
        self.learning_store.save_suggestion(suggestion)
        logger.info("Suggestion rejected by %s", reviewer, extra={"suggestion_id": suggestion_id})
        return suggestion
