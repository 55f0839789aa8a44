"""Decision matrix kernel data models."""

from matrix_kernel.models.classification import (
    CATEGORY_ORDER,
    Classification,
    TransformationCategory,
)
from matrix_kernel.models.config import KernelConfig
from matrix_kernel.models.evaluation import EvaluationResult, TriggeredRule
from matrix_kernel.models.learning import (
    ClarificationQA,
    DataRange,
    FeedbackRecord,
    ImpactEstimate,
    LearningAnalysis,
    Misclassification,
    SubjectConsistency,
    SuggestedChange,
    Suggestion,
    SuggestionStatus,
    SuggestionType,
    ThresholdCheck,
    ValidationDetail,
    ValidationOutcome,
    ValidationTestResult,
)
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

__all__ = [
    "ActionType",
    "Attribute",
    "AttributeType",
    "CATEGORY_ORDER",
    "ClarificationQA",
    "Classification",
    "ComparisonCondition",
    "DataRange",
    "DecisionMatrix",
    "EqualityCondition",
    "EvaluationResult",
    "FeedbackRecord",
    "ImpactEstimate",
    "KernelConfig",
    "LearningAnalysis",
    "MembershipCondition",
    "Misclassification",
    "Rule",
    "RuleAction",
    "SubjectConsistency",
    "SuggestedChange",
    "Suggestion",
    "SuggestionStatus",
    "SuggestionType",
    "ThresholdCheck",
    "TransformationCategory",
    "TriggeredRule",
    "ValidationDetail",
    "ValidationOutcome",
    "ValidationTestResult",
]
