"""
Decision Matrix Kernel API — FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Policy inspection
- Rule evaluation and attribute extraction
- Feedback ingestion
- Learning analysis, suggestions, validation and review
- Prompt template management
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from matrix_kernel.errors import (
    AnalysisNotFoundError,
    CollaboratorUnavailableError,
    InsufficientFeedbackError,
    InvalidVersionError,
    KernelError,
    PolicyIntegrityError,
    PolicyNotFoundError,
    SuggestionApplyError,
    SuggestionNotFoundError,
    SuggestionStateError,
    SynthesisError,
    ValidationCancelledError,
    VersionExistsError,
)
from matrix_kernel.evaluation.pipeline import AttributeExtractor, ClassificationPipeline, Classifier
from matrix_kernel.learning.engine import LearningEngine
from matrix_kernel.learning.feedback import FeedbackSource, InMemoryFeedbackSource
from matrix_kernel.learning.store import LearningStore
from matrix_kernel.learning.synthesizer import SuggestionBackend
from matrix_kernel.learning.trigger import AnalysisTrigger
from matrix_kernel.logging_config import configure_logging
from matrix_kernel.models.classification import Classification
from matrix_kernel.models.config import KernelConfig
from matrix_kernel.models.learning import FeedbackRecord, SuggestionStatus
from matrix_kernel.policy.bootstrap import PolicyGenerator, ensure_initial_policy
from matrix_kernel.policy.store import PolicyStore


# --- Request/Response Models ---

class EvaluateRequest(BaseModel):
    classification: Classification
    attributes: Dict[str, Any] = {}
    version: Optional[str] = None


class TextRequest(BaseModel):
    text: str
    context: Optional[dict] = None
    version: Optional[str] = None


class AnalyzeRequest(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    misclassifications_only: bool = False


class SuggestionsRequest(BaseModel):
    candidates: Optional[List[Any]] = None


class ValidateRequest(BaseModel):
    misclassifications_only: bool = False


class ReviewRequest(BaseModel):
    reviewer: str
    notes: Optional[str] = None


class PromptRequest(BaseModel):
    content: str
    version: Optional[str] = None


# Checked in order, so subclasses come before their parents.
ERROR_STATUS = [
    (PolicyNotFoundError, 404),
    (SuggestionNotFoundError, 404),
    (AnalysisNotFoundError, 404),
    (InvalidVersionError, 400),
    (InsufficientFeedbackError, 422),
    (VersionExistsError, 409),
    (PolicyIntegrityError, 409),
    (SuggestionStateError, 409),
    (SuggestionApplyError, 409),
    (ValidationCancelledError, 409),
    (SynthesisError, 502),
    (CollaboratorUnavailableError, 503),
]


def status_for(error: KernelError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


# --- Application Factory ---

def create_app(
    policy_store: Optional[PolicyStore] = None,
    learning_store: Optional[LearningStore] = None,
    feedback_source: Optional[FeedbackSource] = None,
    classifier: Optional[Classifier] = None,
    attribute_extractor: Optional[AttributeExtractor] = None,
    suggestion_backend: Optional[SuggestionBackend] = None,
    policy_generator: Optional[PolicyGenerator] = None,
    config: Optional[KernelConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Decision Matrix Kernel API",
        description="Versioned rule layer and human-gated learning loop for process classification",
        version="0.1.0",
    )

    # Initialize components
    cfg = config or KernelConfig.from_env()
    configure_logging(cfg.log_level)

    ps = policy_store or PolicyStore(cfg.data_dir)
    ensure_initial_policy(ps, policy_generator)
    fs = feedback_source if feedback_source is not None else InMemoryFeedbackSource()

    pipeline = ClassificationPipeline(
        store=ps,
        classifier=classifier,
        attribute_extractor=attribute_extractor,
    )
    engine = LearningEngine(
        policy_store=ps,
        learning_store=learning_store or LearningStore(cfg.learning_db),
        feedback_source=fs,
        classifier=classifier,
        attribute_extractor=attribute_extractor,
        suggestion_backend=suggestion_backend,
        config=cfg,
    )
    trigger = AnalysisTrigger(engine)

    # Store components on app state for access in endpoints
    app.state.config = cfg
    app.state.policy_store = ps
    app.state.feedback_source = fs
    app.state.pipeline = pipeline
    app.state.learning_engine = engine
    app.state.analysis_trigger = trigger

    @app.exception_handler(KernelError)
    async def kernel_error_handler(request: Request, exc: KernelError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    # === POLICY ===

    @app.get("/policy/latest")
    def get_latest_policy():
        """The policy every evaluation uses by default."""
        return pipeline.resolve_policy().to_wire()

    @app.get("/policy/versions")
    def list_policy_versions():
        """All stored versions, latest first."""
        return ps.list_versions()

    @app.get("/policy/versions/{version}")
    def get_policy_version(version: str):
        matrix = ps.get_version(version)
        if matrix is None:
            raise HTTPException(404, "Policy version not found")
        return matrix.to_wire()

    # === EVALUATION ===

    def _policy(version: Optional[str]):
        if version is None:
            return None
        matrix = ps.get_version(version)
        if matrix is None:
            raise HTTPException(404, "Policy version not found")
        return matrix

    @app.post("/evaluate")
    def evaluate(req: EvaluateRequest):
        """Apply the rule layer to a classification the caller already has."""
        result = pipeline.evaluate(req.classification, req.attributes, _policy(req.version))
        return result.to_wire()

    @app.post("/extract")
    def extract(req: TextRequest):
        """Attributes extracted from a process description."""
        return pipeline.extract_attributes(req.text, req.context)

    @app.post("/classify")
    def classify(req: TextRequest):
        """Full pipeline: classifier, extraction, rule layer."""
        return pipeline.classify_text(req.text, req.context, _policy(req.version)).to_wire()

    # === FEEDBACK ===

    @app.post("/feedback")
    def record_feedback(record: FeedbackRecord):
        """Record a past decision with its human verdict."""
        add = getattr(fs, "add", None)
        if add is None:
            raise HTTPException(405, "Feedback source is read-only")
        add(record)
        return {"status": "recorded", "recordId": record.record_id}

    # === LEARNING ===

    @app.post("/learning/analyze")
    def run_analysis(req: AnalyzeRequest):
        """Manually trigger a feedback analysis."""
        analysis = engine.run_analysis(
            start_date=req.start_date,
            end_date=req.end_date,
            triggered_by="manual",
            misclassifications_only=req.misclassifications_only,
        )
        return analysis.to_wire()

    @app.get("/learning/analyses")
    def list_analyses(limit: int = 50):
        return [a.to_wire() for a in engine.learning_store.list_analyses(limit=limit)]

    @app.get("/learning/analyses/{analysis_id}")
    def get_analysis(analysis_id: str):
        return engine.get_analysis(analysis_id).to_wire()

    @app.post("/learning/analyses/{analysis_id}/suggestions")
    async def create_suggestions(analysis_id: str, req: Optional[SuggestionsRequest] = None):
        """
        Turn an analysis into pending suggestions, either from candidates in
        the request body or from the suggestion collaborator.
        """
        if req is not None and req.candidates is not None:
            analysis = engine.get_analysis(analysis_id)
            suggestions = engine.record_suggestions(analysis, req.candidates)
        else:
            suggestions = await engine.propose_suggestions(analysis_id)
        return [s.to_wire() for s in suggestions]

    @app.get("/learning/check-threshold")
    def check_threshold(threshold: Optional[float] = None):
        return engine.check_threshold(threshold=threshold).to_wire()

    @app.get("/learning/trigger")
    def trigger_status():
        return {
            "status": trigger.status,
            "schedule": trigger.schedule,
            "threshold": trigger.threshold,
            "lastRun": trigger.last_run.isoformat() if trigger.last_run else None,
            "nextRun": trigger.next_run().isoformat(),
        }

    @app.post("/learning/trigger")
    def run_trigger():
        """Run one scheduled-trigger cycle now (for testing)."""
        analysis = trigger.check()
        return {"analysis": analysis.to_wire() if analysis else None}

    @app.get("/learning/suggestions")
    def list_suggestions(
        status: Optional[SuggestionStatus] = None,
        analysis_id: Optional[str] = None,
    ):
        return [s.to_wire() for s in engine.get_all_suggestions(status, analysis_id)]

    @app.get("/learning/suggestions/{suggestion_id}")
    def get_suggestion(suggestion_id: str):
        return engine.get_suggestion(suggestion_id).to_wire()

    @app.get("/learning/suggestions/{suggestion_id}/preview")
    def preview_suggestion(suggestion_id: str):
        """The policy approving this suggestion would produce. Nothing is stored."""
        return engine.preview_suggestion(suggestion_id).to_wire()

    @app.post("/learning/suggestions/{suggestion_id}/validate")
    async def validate_suggestion(suggestion_id: str, req: Optional[ValidateRequest] = None):
        """Counterfactual test of the suggestion against sampled feedback."""
        result = await engine.validate_suggestion(
            suggestion_id,
            misclassifications_only=req.misclassifications_only if req else False,
        )
        return result.to_wire()

    @app.get("/learning/suggestions/{suggestion_id}/validations")
    def list_validations(suggestion_id: str):
        engine.get_suggestion(suggestion_id)
        return [
            r.to_wire()
            for r in engine.learning_store.list_validation_tests(suggestion_id=suggestion_id)
        ]

    @app.post("/learning/suggestions/{suggestion_id}/approve")
    def approve_suggestion(suggestion_id: str, req: ReviewRequest):
        """Human approves a suggestion; a new policy version is written."""
        matrix = engine.approve_suggestion(suggestion_id, req.reviewer, req.notes)
        return {
            "suggestion": engine.get_suggestion(suggestion_id).to_wire(),
            "policy": matrix.to_wire(),
        }

    @app.post("/learning/suggestions/{suggestion_id}/reject")
    def reject_suggestion(suggestion_id: str, req: ReviewRequest):
        """Human rejects a suggestion."""
        return engine.reject_suggestion(suggestion_id, req.reviewer, req.notes).to_wire()

    # === PROMPTS ===

    @app.get("/prompts/{prompt_id}")
    def get_prompt(prompt_id: str, version: Optional[str] = None):
        content = ps.get_prompt(prompt_id, version)
        if content is None:
            raise HTTPException(404, "Prompt not found")
        return {
            "promptId": prompt_id,
            "version": version or ps.list_prompt_versions(prompt_id)[0],
            "content": content,
        }

    @app.put("/prompts/{prompt_id}")
    def save_prompt(prompt_id: str, req: PromptRequest):
        """Store a new version of a prompt template."""
        try:
            version = ps.save_prompt(prompt_id, req.content, req.version)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return {"promptId": prompt_id, "version": version}

    return app
