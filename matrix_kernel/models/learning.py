"""Learning Model — feedback records, analyses, suggestions and validation results."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from matrix_kernel.models.base import WireModel
from matrix_kernel.models.classification import Classification, TransformationCategory
from matrix_kernel.models.matrix import Rule


class ClarificationQA(WireModel):
    question: str
    answer: str


class FeedbackRecord(WireModel):
    """
    A past decision, read from whatever session storage the surrounding system
    uses. The kernel only reads these.
    """

    record_id: str
    created_at: Optional[datetime] = None
    subject: Optional[str] = None
    process_description: str = ""
    clarifications: List[ClarificationQA] = []
    extracted_attributes: Optional[Dict[str, Any]] = None
    classification: Optional[Classification] = None
    human_confirmed: Optional[bool] = None  # None = no feedback given
    corrected_category: Optional[TransformationCategory] = None

    @property
    def has_feedback(self) -> bool:
        return self.classification is not None and self.human_confirmed is not None

    @property
    def correct_category(self) -> Optional[str]:
        """The category a human says is right, if the record says so."""
        if not self.has_feedback:
            return None
        if self.human_confirmed:
            return self.classification.category.value
        if self.corrected_category is not None:
            return self.corrected_category.value
        return None

    def full_text(self) -> str:
        parts = [self.process_description]
        for qa in self.clarifications:
            parts.append(f"{qa.question} {qa.answer}")
        return " ".join(parts)


class DataRange(WireModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_records: int = 0


class Misclassification(WireModel):
    """A (from, to) confusion pair with up to five example record ids."""

    from_category: str = Field(alias="from")
    to_category: str = Field(alias="to")
    count: int = 0
    examples: List[str] = []


class SubjectConsistency(WireModel):
    subject: str
    total_records: int
    agreement_rate: float
    common_category: str
    category_distribution: Dict[str, int] = {}


class LearningAnalysis(WireModel):
    """Output of the Feedback Analyzer, input to the Suggestion Synthesizer."""

    analysis_id: str
    triggered_by: Literal["automatic", "manual"] = "manual"
    triggered_at: datetime
    data_range: DataRange
    overall_agreement_rate: float = 0.0
    category_agreement_rates: Dict[str, float] = {}
    category_sample_counts: Dict[str, int] = {}
    common_misclassifications: List[Misclassification] = []
    identified_patterns: List[str] = []
    subject_consistency: List[SubjectConsistency] = []
    suggestion_ids: List[str] = []

    def categories_below(self, threshold: float) -> List[str]:
        """Categories under the threshold that have at least one observation."""
        return [
            category
            for category, rate in self.category_agreement_rates.items()
            if rate < threshold and self.category_sample_counts.get(category, 0) > 0
        ]


class ThresholdCheck(WireModel):
    below_threshold: bool
    categories: List[str] = []
    overall_rate: float = 0.0
    threshold: float = 0.8


class SuggestionType(str, Enum):
    NEW_RULE = "new_rule"
    MODIFY_RULE = "modify_rule"
    ADJUST_WEIGHT = "adjust_weight"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


class ImpactEstimate(WireModel):
    affected_categories: List[str] = []
    expected_improvement_percent: float = Field(ge=0, le=100, default=0)
    confidence_level: float = Field(ge=0.0, le=1.0, default=0.5)


class SuggestedChange(WireModel):
    new_rule: Optional[Rule] = None         # new_rule
    rule_id: Optional[str] = None           # modify_rule
    modified_rule: Optional[Rule] = None    # modify_rule
    attribute_name: Optional[str] = None    # adjust_weight
    new_weight: Optional[float] = Field(ge=0.0, le=1.0, default=None)


class Suggestion(WireModel):
    """Proposed policy change. Must be human-approved before it is applied."""

    suggestion_id: str
    analysis_id: str
    created_at: datetime
    type: SuggestionType
    status: SuggestionStatus = SuggestionStatus.PENDING
    rationale: str = ""
    impact_estimate: ImpactEstimate = ImpactEstimate()
    suggested_change: SuggestedChange
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    applied_version: Optional[str] = None


class ValidationOutcome(str, Enum):
    IMPROVED = "improved"
    UNCHANGED = "unchanged"
    WORSENED = "worsened"


class ValidationDetail(WireModel):
    record_id: str
    original_category: str
    original_confidence: float
    new_category: str
    new_confidence: float
    correct_category: str
    was_correct_before: bool
    is_correct_now: bool
    outcome: ValidationOutcome


class ValidationTestResult(WireModel):
    """
    Counterfactual evidence for the approval gate. Advisory only: nothing is
    applied on the strength of a validation result.
    """

    test_id: str
    tested_at: datetime
    policy_version: str
    sample_size: int
    sample_percentage: float = 0.0
    total_tested: int = 0
    improved: int = 0
    unchanged: int = 0
    worsened: int = 0
    failed: int = 0
    improvement_rate_percent: float = 0.0
    details: List[ValidationDetail] = []
