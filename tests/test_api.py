"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from matrix_kernel.api.app import create_app, status_for
from matrix_kernel.errors import (
    InsufficientFeedbackError,
    KernelError,
    RuleNotFoundError,
    SuggestionNotFoundError,
)
from matrix_kernel.learning.store import LearningStore
from matrix_kernel.models.config import KernelConfig
from matrix_kernel.policy.store import PolicyStore


@pytest.fixture
def client(tmp_path):
    """Create a test client with fresh components."""
    app = create_app(
        policy_store=PolicyStore(str(tmp_path)),
        learning_store=LearningStore(db_path=":memory:"),
        config=KernelConfig(data_dir=str(tmp_path)),
    )
    return TestClient(app)


def _feedback(record_id, frequency, confirmed, corrected=None):
    return {
        "recordId": record_id,
        "subject": "Finance",
        "processDescription": f"A {frequency} finance process",
        "extractedAttributes": {"frequency": frequency, "complexity": "low", "risk": "low"},
        "classification": {"category": "RPA", "confidence": 0.6},
        "humanConfirmed": confirmed,
        "correctedCategory": corrected,
    }


def _post_feedback(client):
    for i in range(4):
        client.post("/feedback", json=_feedback(f"m{i}", "monthly", False, "Digitise"))
        client.post("/feedback", json=_feedback(f"d{i}", "daily", True))


MONTHLY_RULE = {
    "type": "new_rule",
    "rationale": "Monthly processes are being over-automated",
    "suggestedChange": {
        "newRule": {
            "ruleId": "monthly-digitise",
            "name": "Monthly is Digitise",
            "conditions": [{"attribute": "frequency", "operator": "==", "value": "monthly"}],
            "action": {"type": "override", "targetCategory": "Digitise"},
            "priority": 75,
        },
    },
}


def _create_suggestion(client):
    _post_feedback(client)
    analysis = client.post("/learning/analyze", json={}).json()
    response = client.post(
        f"/learning/analyses/{analysis['analysisId']}/suggestions",
        json={"candidates": [MONTHLY_RULE]},
    )
    assert response.status_code == 200
    return response.json()[0]


class TestErrorMapping:
    def test_status_codes(self):
        assert status_for(SuggestionNotFoundError("missing")) == 404
        assert status_for(InsufficientFeedbackError("empty")) == 422
        assert status_for(RuleNotFoundError("stale")) == 409
        assert status_for(KernelError("boom")) == 500


class TestPolicyEndpoints:
    def test_initial_policy_created(self, client):
        response = client.get("/policy/latest")
        assert response.status_code == 200
        data = response.json()
        assert data["version"] == "1.0"
        assert data["createdBy"] == "ai"
        assert "baseline-repetitive-rpa" in [r["ruleId"] for r in data["rules"]]

    def test_list_versions(self, client):
        assert client.get("/policy/versions").json() == ["1.0"]

    def test_get_version(self, client):
        assert client.get("/policy/versions/1.0").json()["version"] == "1.0"

    def test_missing_version(self, client):
        assert client.get("/policy/versions/9.9").status_code == 404

    def test_invalid_version(self, client):
        response = client.get("/policy/versions/latest")
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidVersionError"


class TestEvaluationEndpoints:
    def test_evaluate(self, client):
        response = client.post("/evaluate", json={
            "classification": {"category": "Simplify", "confidence": 0.7},
            "attributes": {"frequency": "daily", "complexity": "low", "risk": "low"},
        })
        assert response.status_code == 200
        data = response.json()
        assert data["policyVersion"] == "1.0"
        assert data["overridden"] is True
        assert data["finalClassification"]["category"] == "RPA"
        assert data["originalClassification"]["category"] == "Simplify"
        assert data["triggeredRules"][0]["ruleId"] == "baseline-repetitive-rpa"

    def test_evaluate_unknown_version(self, client):
        response = client.post("/evaluate", json={
            "classification": {"category": "RPA", "confidence": 0.7},
            "version": "4.2",
        })
        assert response.status_code == 404

    def test_evaluate_rejects_bad_category(self, client):
        response = client.post("/evaluate", json={
            "classification": {"category": "Outsource", "confidence": 0.7},
        })
        assert response.status_code == 422

    def test_extract(self, client):
        response = client.post("/extract", json={"text": "A simple daily task done by hand"})
        assert response.status_code == 200
        data = response.json()
        assert data["frequency"] == "daily"
        assert data["complexity"] == "low"

    def test_classify_without_classifier(self, client):
        response = client.post("/classify", json={"text": "A daily task"})
        assert response.status_code == 503
        assert response.json()["error"] == "CollaboratorUnavailableError"


class TestLearningEndpoints:
    def test_record_feedback(self, client):
        response = client.post("/feedback", json=_feedback("r1", "daily", True))
        assert response.json() == {"status": "recorded", "recordId": "r1"}

    def test_analyze_without_feedback(self, client):
        response = client.post("/learning/analyze", json={})
        assert response.status_code == 422
        assert response.json()["error"] == "InsufficientFeedbackError"

    def test_analyze(self, client):
        _post_feedback(client)
        response = client.post("/learning/analyze", json={})
        assert response.status_code == 200
        data = response.json()
        assert data["triggeredBy"] == "manual"
        assert data["overallAgreementRate"] == 0.5
        assert data["commonMisclassifications"][0]["from"] == "RPA"
        assert data["commonMisclassifications"][0]["to"] == "Digitise"

        listed = client.get("/learning/analyses").json()
        assert [a["analysisId"] for a in listed] == [data["analysisId"]]
        assert client.get(f"/learning/analyses/{data['analysisId']}").status_code == 200

    def test_missing_analysis(self, client):
        assert client.get("/learning/analyses/analysis_missing").status_code == 404

    def test_check_threshold(self, client):
        _post_feedback(client)
        data = client.get("/learning/check-threshold").json()
        assert data["belowThreshold"] is True
        assert data["categories"] == ["RPA"]
        assert client.get("/learning/check-threshold?threshold=0.4").json()["belowThreshold"] is False

    def test_suggestions_without_backend(self, client):
        _post_feedback(client)
        analysis = client.post("/learning/analyze", json={}).json()
        response = client.post(f"/learning/analyses/{analysis['analysisId']}/suggestions", json={})
        assert response.status_code == 503

    def test_trigger(self, client):
        status = client.get("/learning/trigger").json()
        assert status["status"] == "stopped"
        assert status["schedule"] == "0 2 * * *"
        assert status["lastRun"] is None

        _post_feedback(client)
        data = client.post("/learning/trigger").json()
        assert data["analysis"]["triggeredBy"] == "automatic"
        assert client.get("/learning/trigger").json()["lastRun"] is not None


class TestSuggestionLifecycle:
    def test_full_loop(self, client):
        suggestion = _create_suggestion(client)
        suggestion_id = suggestion["suggestionId"]
        assert suggestion["status"] == "pending"

        preview = client.get(f"/learning/suggestions/{suggestion_id}/preview").json()
        assert preview["version"] == "1.1"
        assert client.get("/policy/versions").json() == ["1.0"]

        validation = client.post(f"/learning/suggestions/{suggestion_id}/validate", json={}).json()
        assert validation["sampleSize"] == 8
        assert validation["improved"] == 4
        assert validation["improvementRatePercent"] == 50.0
        validations = client.get(f"/learning/suggestions/{suggestion_id}/validations").json()
        assert [v["testId"] for v in validations] == [validation["testId"]]

        response = client.post(
            f"/learning/suggestions/{suggestion_id}/approve",
            json={"reviewer": "alice", "notes": "Ship it"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["policy"]["version"] == "1.1"
        assert data["suggestion"]["status"] == "applied"
        assert data["suggestion"]["appliedVersion"] == "1.1"

        assert client.get("/policy/versions").json() == ["1.1", "1.0"]
        evaluated = client.post("/evaluate", json={
            "classification": {"category": "RPA", "confidence": 0.7},
            "attributes": {"frequency": "monthly", "complexity": "low", "risk": "low"},
        }).json()
        assert evaluated["policyVersion"] == "1.1"
        assert evaluated["finalClassification"]["category"] == "Digitise"

        # Old versions stay addressable
        old = client.post("/evaluate", json={
            "classification": {"category": "RPA", "confidence": 0.7},
            "attributes": {"frequency": "monthly", "complexity": "low", "risk": "low"},
            "version": "1.0",
        }).json()
        assert old["finalClassification"]["category"] == "RPA"

    def test_approve_twice_conflicts(self, client):
        suggestion_id = _create_suggestion(client)["suggestionId"]
        client.post(f"/learning/suggestions/{suggestion_id}/approve", json={"reviewer": "alice"})
        response = client.post(f"/learning/suggestions/{suggestion_id}/approve", json={"reviewer": "bob"})
        assert response.status_code == 409
        assert response.json()["suggestion_id"] == suggestion_id

    def test_reject(self, client):
        suggestion_id = _create_suggestion(client)["suggestionId"]
        data = client.post(
            f"/learning/suggestions/{suggestion_id}/reject",
            json={"reviewer": "bob", "notes": "Not convinced"},
        ).json()
        assert data["status"] == "rejected"
        assert client.get("/learning/suggestions?status=pending").json() == []
        assert len(client.get("/learning/suggestions?status=rejected").json()) == 1

    def test_missing_suggestion(self, client):
        assert client.get("/learning/suggestions/sugg_missing").status_code == 404
        response = client.post("/learning/suggestions/sugg_missing/approve", json={"reviewer": "alice"})
        assert response.status_code == 404


class TestPromptEndpoints:
    def test_seeded_prompt(self, client):
        data = client.get("/prompts/learning-suggestion").json()
        assert data["version"] == "1.0"
        assert data["content"]

    def test_save_new_version(self, client):
        response = client.put("/prompts/learning-suggestion", json={"content": "Be brief."})
        assert response.json() == {"promptId": "learning-suggestion", "version": "1.1"}
        assert client.get("/prompts/learning-suggestion").json()["content"] == "Be brief."
        assert client.get("/prompts/learning-suggestion?version=1.0").json()["content"] != "Be brief."

    def test_existing_version_conflicts(self, client):
        response = client.put("/prompts/learning-suggestion", json={"content": "x", "version": "1.0"})
        assert response.status_code == 409

    def test_invalid_prompt_id(self, client):
        assert client.put("/prompts/bad.id", json={"content": "x"}).status_code == 400

    def test_missing_prompt(self, client):
        assert client.get("/prompts/nothing-here").status_code == 404
