"""
Feedback Analyzer — agreement statistics over past human-reviewed decisions.

Pure aggregation: records in, LearningAnalysis out. Records without human
feedback are excluded, never counted as disagreements. Categories with no
observations report a rate of 0 alongside a sample count of 0 so that "no
data" is never mistaken for "failing".
"""

import logging
import math
from collections import Counter, OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Literal, Optional
from uuid import uuid4

from matrix_kernel.errors import InsufficientFeedbackError
from matrix_kernel.models.classification import CATEGORY_ORDER, category_rank
from matrix_kernel.models.learning import (
    DataRange,
    FeedbackRecord,
    LearningAnalysis,
    Misclassification,
    SubjectConsistency,
    ThresholdCheck,
)

logger = logging.getLogger(__name__)

MAX_EXAMPLES = 5
LOW_CONFIDENCE = 0.7
LOW_CONSISTENCY = 0.7
MIN_SUBJECT_RECORDS = 2
MIN_INCONSISTENT_SUBJECT_RECORDS = 3
MAX_INCONSISTENT_SUBJECTS = 3
MIN_SUBJECT_TREND_RECORDS = 5
MIN_SUBJECT_TREND_COUNT = 2
UNKNOWN_SUBJECT = "Unknown"


def select_records(
    records: Iterable[FeedbackRecord],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    misclassifications_only: bool = False,
) -> List[FeedbackRecord]:
    """Records that carry feedback, inside the date range if one is given."""
    selected = []
    for record in records:
        if not record.has_feedback:
            continue
        if start_date or end_date:
            if record.created_at is None:
                continue
            if start_date and record.created_at < start_date:
                continue
            if end_date and record.created_at > end_date:
                continue
        if misclassifications_only and record.human_confirmed:
            continue
        selected.append(record)
    return selected


def overall_agreement_rate(records: List[FeedbackRecord]) -> float:
    if not records:
        return 0.0
    confirmed = sum(1 for r in records if r.human_confirmed)
    return confirmed / len(records)


def category_statistics(records: List[FeedbackRecord]):
    """(rates, sample counts) keyed by the category the system originally chose."""
    totals = {category: 0 for category in CATEGORY_ORDER}
    confirmed = {category: 0 for category in CATEGORY_ORDER}
    for record in records:
        category = record.classification.category.value
        totals[category] += 1
        if record.human_confirmed:
            confirmed[category] += 1
    rates = {
        category: (confirmed[category] / totals[category]) if totals[category] else 0.0
        for category in CATEGORY_ORDER
    }
    return rates, totals


def find_misclassifications(records: List[FeedbackRecord]) -> List[Misclassification]:
    """Confusion pairs from rejected decisions that name a corrected category."""
    pairs: "OrderedDict[tuple, dict]" = OrderedDict()
    for record in records:
        if record.human_confirmed or record.corrected_category is None:
            continue
        key = (record.classification.category.value, record.corrected_category.value)
        entry = pairs.setdefault(key, {"count": 0, "examples": []})
        entry["count"] += 1
        if len(entry["examples"]) < MAX_EXAMPLES:
            entry["examples"].append(record.record_id)

    found = [
        Misclassification(from_category=src, to_category=dst, count=e["count"], examples=e["examples"])
        for (src, dst), e in pairs.items()
    ]
    return sorted(found, key=lambda m: m.count, reverse=True)


def group_by_subject(records: List[FeedbackRecord]) -> Dict[str, List[FeedbackRecord]]:
    grouped: Dict[str, List[FeedbackRecord]] = OrderedDict()
    for record in records:
        grouped.setdefault(record.subject or UNKNOWN_SUBJECT, []).append(record)
    return grouped


def subject_consistency(records: List[FeedbackRecord]) -> List[SubjectConsistency]:
    results = []
    for subject, subject_records in group_by_subject(records).items():
        if len(subject_records) < MIN_SUBJECT_RECORDS:
            continue
        distribution = Counter(r.classification.category.value for r in subject_records)
        results.append(SubjectConsistency(
            subject=subject,
            total_records=len(subject_records),
            agreement_rate=overall_agreement_rate(subject_records),
            common_category=distribution.most_common(1)[0][0],
            category_distribution=dict(distribution),
        ))
    return sorted(results, key=lambda s: s.total_records, reverse=True)


def identify_patterns(
    records: List[FeedbackRecord],
    misclassifications: List[Misclassification],
    consistency: List[SubjectConsistency],
) -> List[str]:
    """Advisory text for reviewers and the suggestion collaborator."""
    patterns = []

    if misclassifications:
        top = misclassifications[0]
        patterns.append(
            f"Most common misclassification: {top.from_category} → {top.to_category} "
            f"({top.count} occurrences)"
        )

    over = sum(
        m.count for m in misclassifications
        if category_rank(m.from_category) > category_rank(m.to_category)
    )
    if over:
        patterns.append(
            f"Over-classification tendency: {over} cases where system classified "
            f"higher than correct category"
        )

    under = sum(
        m.count for m in misclassifications
        if category_rank(m.from_category) < category_rank(m.to_category)
    )
    if under:
        patterns.append(
            f"Under-classification tendency: {under} cases where system classified "
            f"lower than correct category"
        )

    low_confidence = sum(
        1 for r in records
        if not r.human_confirmed and r.classification.confidence < LOW_CONFIDENCE
    )
    if low_confidence:
        patterns.append(
            f"{low_confidence} misclassifications had confidence < {LOW_CONFIDENCE}, "
            f"suggesting uncertainty"
        )

    inconsistent = [
        s for s in consistency
        if s.agreement_rate < LOW_CONSISTENCY and s.total_records >= MIN_INCONSISTENT_SUBJECT_RECORDS
    ]
    for subject in inconsistent[:MAX_INCONSISTENT_SUBJECTS]:
        patterns.append(
            f'Subject "{subject.subject}": Low consistency '
            f"({subject.agreement_rate * 100:.0f}% agreement) across "
            f"{subject.total_records} decisions"
        )

    for subject, subject_records in group_by_subject(records).items():
        if len(subject_records) < MIN_SUBJECT_TREND_RECORDS:
            continue
        subject_pairs = find_misclassifications(subject_records)
        if subject_pairs and subject_pairs[0].count >= MIN_SUBJECT_TREND_COUNT:
            top = subject_pairs[0]
            patterns.append(
                f'Subject "{subject}": Recurring misclassification '
                f"{top.from_category} → {top.to_category} ({top.count} times)"
            )

    return patterns


def calculate_sample_size(total: int, fraction: float = 0.10, cap: int = 1000) -> int:
    """max(10, ceil(fraction * total)), capped, and never more than exists."""
    return min(cap, max(10, math.ceil(fraction * total)), total)


class FeedbackAnalyzer:
    """Builds LearningAnalysis records from feedback."""

    def __init__(self, agreement_threshold: float = 0.8):
        self.agreement_threshold = agreement_threshold

    def analyze(
        self,
        records: Iterable[FeedbackRecord],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        triggered_by: Literal["automatic", "manual"] = "manual",
        misclassifications_only: bool = False,
    ) -> LearningAnalysis:
        """
        Analyze the feedback records in the date range.
        Raises InsufficientFeedbackError if none carry feedback.
        """
        selected = select_records(records, start_date, end_date, misclassifications_only)
        if not selected:
            raise InsufficientFeedbackError(
                "No decisions with feedback found in the specified date range"
            )

        rates, counts = category_statistics(selected)
        misclassifications = find_misclassifications(selected)
        consistency = subject_consistency(selected)
        dated = sorted(r.created_at for r in selected if r.created_at is not None)

        analysis = LearningAnalysis(
            analysis_id=f"analysis_{uuid4().hex[:12]}",
            triggered_by=triggered_by,
            triggered_at=datetime.utcnow(),
            data_range=DataRange(
                start_date=start_date or (dated[0] if dated else None),
                end_date=end_date or (dated[-1] if dated else None),
                total_records=len(selected),
            ),
            overall_agreement_rate=overall_agreement_rate(selected),
            category_agreement_rates=rates,
            category_sample_counts=counts,
            common_misclassifications=misclassifications,
            identified_patterns=identify_patterns(selected, misclassifications, consistency),
            subject_consistency=consistency,
        )
        logger.info(
            "Analyzed %d decisions: %.1f%% agreement, %d misclassification pairs",
            len(selected),
            analysis.overall_agreement_rate * 100,
            len(misclassifications),
            extra={"analysis_id": analysis.analysis_id},
        )
        return analysis

    def check_threshold(
        self,
        records: Iterable[FeedbackRecord],
        threshold: Optional[float] = None,
    ) -> ThresholdCheck:
        """
        Flag categories below the agreement threshold. Only categories with at
        least one observation can breach it.
        """
        threshold = self.agreement_threshold if threshold is None else threshold
        selected = select_records(records)
        overall = overall_agreement_rate(selected)
        rates, counts = category_statistics(selected)
        below = [c for c in CATEGORY_ORDER if counts[c] > 0 and rates[c] < threshold]
        return ThresholdCheck(
            below_threshold=bool(below) or (bool(selected) and overall < threshold),
            categories=below,
            overall_rate=overall,
            threshold=threshold,
        )
