"""
Error taxonomy for Shipgate pipeline runs.

Every error carries a machine-readable ``reason`` string. The pipeline copies
these reasons verbatim into the run record and the audit log, so the strings
are part of the public contract (the CLI prints them, CI jobs grep for them).

Reasons never contain secret values. Errors raised while handling a secret
reference the secret's *name* only.
"""

from typing import Iterable, List, Optional


class PipelineError(Exception):
    """Base class for every error that can end a pipeline run."""

    reason = "pipeline-error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        self.reason = reason or self.reason
        self.reasons: List[str] = [self.reason]
        super().__init__(message or self.reason)


class SecretNotFound(PipelineError):
    """A named secret could not be resolved from the configured source."""

    def __init__(self, name: str, detail: str = ""):
        self.secret_name = name
        message = f"Secret '{name}' not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, reason=f"secret-not-found:{name}")


class InvalidRequest(PipelineError):
    """Deployment request failed shape validation."""

    reason = "invalid-request"


class BuildFailed(PipelineError):
    """The external builder could not produce an image."""

    def __init__(self, repository: str, message: str = "", transient: bool = False):
        self.repository = repository
        self.transient = transient
        super().__init__(
            message or f"Build failed for {repository}",
            reason=f"build-failed:{repository}",
        )


class ScanUnavailable(PipelineError):
    """The secret scanner could not produce a result."""

    reason = "scan-unavailable"


class PolicyViolation(PipelineError):
    """
    The policy gate denied the deployment.

    Carries every violated rule, not only the first one, so a single run
    reports everything that needs fixing.
    """

    reason = "policy-violation"

    def __init__(self, reasons: Iterable[str]):
        reasons = list(reasons)
        super().__init__(", ".join(reasons) or self.reason)
        self.reasons = reasons


class PushFailed(PipelineError):
    """The registry rejected or lost a push."""

    def __init__(self, repository: str, message: str = "", transient: bool = False):
        self.repository = repository
        self.transient = transient
        super().__init__(
            message or f"Push failed for {repository}",
            reason=f"push-failed:{repository}",
        )


class AuthFailed(PushFailed):
    """Registry credentials were rejected. Never retried."""

    def __init__(self, repository: str, message: str = ""):
        super().__init__(repository, message or f"Registry authentication failed for {repository}")


class OperationTimeout(PipelineError):
    """A single build, scan or push exceeded its time budget."""

    def __init__(self, stage: str, seconds: float, pending=None):
        self.stage = stage
        self.seconds = seconds
        # Future of the operation, which keeps running after the wait gives up
        self.pending = pending
        super().__init__(
            f"{stage} did not finish within {seconds:g}s",
            reason=f"timeout:{stage}",
        )


class PipelineBusy(PipelineError):
    """Another run is already active on this pipeline instance."""

    reason = "pipeline-busy"


class PipelineCancelled(PipelineError):
    """The run was cancelled at a transition boundary."""

    reason = "cancelled"
