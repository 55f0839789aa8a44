"""
Kernel exception hierarchy.

Data-shape problems (malformed rules, bad LLM output) are corrected locally and
never surface here. These errors are for cross-cutting failures that the caller
must see: a store write that cannot happen, a stale suggestion, a failed
collaborator call. Each carries the identifiers needed to diagnose it without
re-running the pipeline.
"""

from typing import Optional


class KernelError(Exception):
    """Base class for all decision-matrix kernel errors."""

    def __init__(
        self,
        message: str,
        version: Optional[str] = None,
        rule_id: Optional[str] = None,
        suggestion_id: Optional[str] = None,
        attribute_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.version = version
        self.rule_id = rule_id
        self.suggestion_id = suggestion_id
        self.attribute_name = attribute_name

    def to_dict(self) -> dict:
        """Serialize for API responses and structured logs."""
        result = {"error": type(self).__name__, "message": self.message}
        for key in ("version", "rule_id", "suggestion_id", "attribute_name"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


class InvalidVersionError(KernelError):
    """Version string is not of the form major.minor[.patch]."""
    pass


class VersionExistsError(KernelError):
    """The store is append-only; a version can be written exactly once."""
    pass


class PolicyNotFoundError(KernelError):
    """No policy is stored, or the requested version does not exist."""
    pass


class PolicyIntegrityError(KernelError):
    """A rule references an attribute or value the policy does not define."""
    pass


class SuggestionNotFoundError(KernelError):
    pass


class SuggestionStateError(KernelError):
    """The suggestion's status does not allow the requested transition."""
    pass


class SuggestionApplyError(KernelError):
    """An approved suggestion cannot be merged into the latest policy."""
    pass


class RuleNotFoundError(SuggestionApplyError):
    """modify_rule targets a ruleId that is not in the latest policy."""
    pass


class AttributeNotFoundError(SuggestionApplyError):
    """adjust_weight targets an attribute that is not in the latest policy."""
    pass


class DuplicateRuleError(SuggestionApplyError):
    """new_rule carries a ruleId already present in the latest policy."""
    pass


class SynthesisError(KernelError):
    """The suggestion collaborator failed, timed out, or returned garbage."""
    pass


class InsufficientFeedbackError(KernelError):
    """No decisions with human feedback were available for analysis."""
    pass


class ValidationCancelledError(KernelError):
    """A validation sampler run was cancelled before it completed."""
    pass


class CollaboratorUnavailableError(KernelError):
    """An operation needs an external collaborator that was not configured."""
    pass


class AnalysisNotFoundError(KernelError):
    pass
