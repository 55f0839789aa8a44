"""Tests for heuristic attribute extraction and the classification pipeline."""

import pytest

from matrix_kernel.errors import CollaboratorUnavailableError, PolicyNotFoundError
from matrix_kernel.evaluation.extractor import HeuristicExtractor, extract_attributes
from matrix_kernel.evaluation.pipeline import ClassificationPipeline
from matrix_kernel.models.classification import Classification, TransformationCategory
from matrix_kernel.models.learning import ClarificationQA
from matrix_kernel.policy.bootstrap import ensure_initial_policy
from matrix_kernel.policy.store import PolicyStore


class StaticClassifier:
    def __init__(self, category="Digitise", confidence=0.8):
        self.classification = Classification(category=category, confidence=confidence)
        self.calls = []

    def classify(self, text, context=None):
        self.calls.append((text, context))
        return self.classification


class FailingExtractor:
    def extract_attributes(self, text, context=None):
        raise RuntimeError("model offline")


class TestExtractAttributes:
    def test_defaults(self):
        attributes = extract_attributes("We reconcile accounts")
        assert attributes == {
            "business_value": "medium",
            "complexity": "medium",
            "risk": "medium",
            "data_sensitivity": "public",
        }

    def test_keywords(self):
        attributes = extract_attributes(
            "A simple daily task done by hand in Excel for 40 employees. "
            "It is slow and involves 6 steps across 3 systems. Low risk, confidential data."
        )
        assert attributes["frequency"] == "daily"
        assert attributes["complexity"] == "low"
        assert attributes["risk"] == "low"
        assert attributes["user_count"] == 40
        assert attributes["data_sensitivity"] == "confidential"
        assert attributes["current_state"] == "manual"
        assert attributes["data_source"] == "spreadsheet"
        assert attributes["pain_point"] == "time_consuming"
        assert attributes["step_count"] == 6
        assert attributes["system_count"] == 3

    @pytest.mark.parametrize("text,expected", [
        ("this carries critical risk", "critical"),
        ("this is high risk", "critical"),
        ("this is low risk", "low"),
        ("this is risky", "high"),
        ("this is safe", "low"),
    ])
    def test_risk_levels(self, text, expected):
        assert extract_attributes(text)["risk"] == expected

    def test_clarifications_count(self):
        attributes = extract_attributes(
            "Expense approvals",
            [ClarificationQA(question="How often does it run?", answer="Weekly")],
        )
        assert attributes["frequency"] == "weekly"

    def test_heuristic_extractor_reads_context(self):
        attributes = HeuristicExtractor().extract_attributes(
            "Expense approvals",
            {"clarifications": [{"question": "Complexity?", "answer": "Very complex"}]},
        )
        assert attributes["complexity"] == "very_high"


class TestClassificationPipeline:
    def setup_method(self):
        self.classifier = StaticClassifier("Digitise")

    def _make_pipeline(self, tmp_path, **kwargs):
        store = PolicyStore(str(tmp_path))
        ensure_initial_policy(store)
        return ClassificationPipeline(store, **kwargs)

    def test_classify_text_applies_latest_policy(self, tmp_path):
        pipeline = self._make_pipeline(tmp_path, classifier=self.classifier)
        result = pipeline.classify_text("A simple daily data entry task, low risk")
        assert result.policy_version == "1.0"
        assert result.final_classification.category == TransformationCategory.RPA
        assert result.extracted_attributes["frequency"] == "daily"
        assert len(self.classifier.calls) == 1

    def test_high_risk_text_flagged_for_review(self, tmp_path):
        pipeline = self._make_pipeline(tmp_path, classifier=self.classifier)
        result = pipeline.classify_text("A monthly payments process, high risk")
        assert result.extracted_attributes["risk"] == "critical"
        assert "baseline-critical-risk-review" in [r.rule_id for r in result.triggered_rules]

    def test_extractor_failure_falls_back_to_heuristics(self, tmp_path):
        pipeline = self._make_pipeline(
            tmp_path, classifier=self.classifier, attribute_extractor=FailingExtractor()
        )
        attributes = pipeline.extract_attributes("A weekly report")
        assert attributes["frequency"] == "weekly"

    def test_classify_without_classifier(self, tmp_path):
        pipeline = self._make_pipeline(tmp_path)
        with pytest.raises(CollaboratorUnavailableError):
            pipeline.classify_text("anything")

    def test_empty_store(self, tmp_path):
        pipeline = ClassificationPipeline(PolicyStore(str(tmp_path)))
        with pytest.raises(PolicyNotFoundError):
            pipeline.evaluate(Classification(category="RPA", confidence=0.5), {})
