"""Tests for the Validation Sampler."""

import asyncio
import random
import threading
import time
from collections import Counter
from datetime import datetime

import pytest

from matrix_kernel.errors import InsufficientFeedbackError, ValidationCancelledError
from matrix_kernel.learning.sampler import ValidationSampler, fisher_yates_sample
from matrix_kernel.models.classification import Classification
from matrix_kernel.models.learning import FeedbackRecord, ValidationOutcome
from matrix_kernel.models.matrix import (
    Attribute,
    AttributeType,
    DecisionMatrix,
    EqualityCondition,
    Rule,
    RuleAction,
)


def _make_candidate(rules=None) -> DecisionMatrix:
    """Candidate policy: monthly work should be Digitise, not RPA."""
    return DecisionMatrix(
        version="1.1",
        created_at=datetime(2024, 1, 1),
        attributes=[
            Attribute(
                name="frequency",
                type=AttributeType.CATEGORICAL,
                possible_values=["daily", "weekly", "monthly"],
            ),
        ],
        rules=rules if rules is not None else [
            Rule(
                rule_id="monthly-digitise",
                name="Monthly is Digitise",
                conditions=[EqualityCondition(attribute="frequency", operator="==", value="monthly")],
                action=RuleAction(type="override", target_category="Digitise"),
            ),
        ],
    )


def _make_record(record_id, category="RPA", frequency="monthly", confirmed=False, corrected="Digitise"):
    return FeedbackRecord(
        record_id=record_id,
        process_description=f"Process {record_id}",
        extracted_attributes={"frequency": frequency},
        classification=Classification(category=category, confidence=0.8),
        human_confirmed=confirmed,
        corrected_category=None if confirmed else corrected,
    )


def _make_population(n):
    return [_make_record(f"r{i}", frequency="daily", confirmed=True) for i in range(n)]


class SlowClassifier:
    def __init__(self, delay):
        self.delay = delay

    def classify(self, text, context=None):
        time.sleep(self.delay)
        return Classification(category="RPA", confidence=0.8)


class FlakyClassifier:
    def classify(self, text, context=None):
        if text.endswith("r1"):
            raise RuntimeError("model offline")
        return Classification(category="RPA", confidence=0.8)


class TestFisherYates:
    def test_without_replacement(self):
        sample = fisher_yates_sample(list(range(20)), 10, random.Random(1))
        assert len(sample) == 10
        assert len(set(sample)) == 10

    def test_size_capped_at_population(self):
        assert sorted(fisher_yates_sample([1, 2, 3], 10, random.Random(1))) == [1, 2, 3]

    def test_input_not_mutated(self):
        items = list(range(10))
        fisher_yates_sample(items, 5, random.Random(1))
        assert items == list(range(10))


class TestSampleCoverage:
    def test_fifty_records_always_sample_ten(self):
        sampler = ValidationSampler(rng=random.Random(7))
        population = _make_population(50)
        for _ in range(200):
            assert len(sampler.draw_sample(population)) == 10

    def test_selection_is_roughly_uniform(self):
        sampler = ValidationSampler(rng=random.Random(42))
        population = _make_population(50)
        counts = Counter()
        runs = 5000
        for _ in range(runs):
            counts.update(r.record_id for r in sampler.draw_sample(population))

        # Each record is expected runs * 10 / 50 = 1000 times
        assert len(counts) == 50
        assert min(counts.values()) > 850
        assert max(counts.values()) < 1150

    def test_fraction_bounds(self):
        with pytest.raises(ValueError):
            ValidationSampler(sample_fraction=0.05)
        with pytest.raises(ValueError):
            ValidationSampler(sample_fraction=1.5)

    def test_cap(self):
        sampler = ValidationSampler(sample_fraction=1.0, sample_cap=25)
        assert sampler.sample_size(100) == 25


class TestValidate:
    def test_rules_only_outcomes(self):
        records = [
            _make_record("fixed"),                                            # RPA, should be Digitise
            _make_record("broken", category="RPA", confirmed=True),           # RPA was right
            _make_record("untouched", frequency="daily", confirmed=True),     # no rule fires
        ]
        sampler = ValidationSampler(sample_fraction=1.0)
        result = asyncio.run(sampler.validate(_make_candidate(), records))

        outcomes = {d.record_id: d.outcome for d in result.details}
        assert outcomes == {
            "fixed": ValidationOutcome.IMPROVED,
            "broken": ValidationOutcome.WORSENED,
            "untouched": ValidationOutcome.UNCHANGED,
        }
        assert result.policy_version == "1.1"
        assert result.sample_size == 3
        assert result.total_tested == 3
        assert (result.improved, result.unchanged, result.worsened, result.failed) == (1, 1, 1, 0)
        assert result.improvement_rate_percent == 0.0
        assert result.sample_percentage == 100.0
        assert result.test_id.startswith("vtest_")

    def test_improvement_rate(self):
        records = [_make_record(f"m{i}") for i in range(3)] + [
            _make_record("d1", frequency="daily", confirmed=True)
        ]
        sampler = ValidationSampler(sample_fraction=1.0)
        result = asyncio.run(sampler.validate(_make_candidate(), records))
        assert result.improved == 3
        assert result.improvement_rate_percent == 75.0

    def test_records_without_known_answer_skipped(self):
        records = [
            _make_record("known"),
            _make_record("unknown", corrected=None),
            FeedbackRecord(record_id="no-feedback", classification=Classification(category="RPA", confidence=0.5)),
        ]
        result = asyncio.run(ValidationSampler(sample_fraction=1.0).validate(_make_candidate(), records))
        assert [d.record_id for d in result.details] == ["known"]

    def test_empty_population(self):
        with pytest.raises(InsufficientFeedbackError):
            asyncio.run(ValidationSampler().validate(_make_candidate(), []))

    def test_failed_items_excluded(self):
        records = [_make_record(f"r{i}") for i in range(4)]
        sampler = ValidationSampler(classifier=FlakyClassifier(), sample_fraction=1.0)
        result = asyncio.run(sampler.validate(_make_candidate(), records))
        assert result.sample_size == 4
        assert result.failed == 1
        assert result.total_tested == 3
        assert "r1" not in [d.record_id for d in result.details]
        assert result.improvement_rate_percent == 100.0

    def test_timed_out_items_excluded(self):
        records = [_make_record(f"r{i}") for i in range(2)]
        sampler = ValidationSampler(
            classifier=SlowClassifier(0.3), sample_fraction=1.0, timeout_seconds=0.05
        )
        result = asyncio.run(sampler.validate(_make_candidate(), records))
        assert result.failed == 2
        assert result.total_tested == 0
        assert result.improvement_rate_percent == 0.0

    def test_cancelled_run_raises(self):
        cancel = threading.Event()
        cancel.set()
        sampler = ValidationSampler(sample_fraction=1.0)
        with pytest.raises(ValidationCancelledError):
            asyncio.run(sampler.validate(_make_candidate(), [_make_record("r1")], cancel_event=cancel))

    def test_cancel_mid_run(self):
        cancel = threading.Event()

        class CancellingClassifier:
            def classify(self, text, context=None):
                cancel.set()
                return Classification(category="RPA", confidence=0.8)

        records = [_make_record(f"r{i}") for i in range(6)]
        sampler = ValidationSampler(
            classifier=CancellingClassifier(), sample_fraction=1.0, max_concurrency=1
        )
        with pytest.raises(ValidationCancelledError):
            asyncio.run(sampler.validate(_make_candidate(), records, cancel_event=cancel))

    def test_misclassifications_only(self):
        records = [_make_record("wrong"), _make_record("right", frequency="daily", confirmed=True)]
        sampler = ValidationSampler(sample_fraction=1.0)
        result = asyncio.run(
            sampler.validate(_make_candidate(), records, misclassifications_only=True)
        )
        assert [d.record_id for d in result.details] == ["wrong"]
