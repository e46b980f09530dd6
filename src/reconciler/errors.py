"""Reconcile errors.

Phases record the outcome on the resource status first, then raise one
of these so the orchestrator can persist and decide how to requeue.
"""


class ReconcileError(Exception):
    """Base for errors that end a reconcile pass."""


class ArtifactError(ReconcileError):
    """Source artifact missing, not ready, or failed to unpack."""


class AccessDeniedError(ReconcileError):
    """Cross-namespace reference refused by policy. Not retried."""


class DependencyNotReadyError(ReconcileError):
    """A declared dependency is not ready yet."""


class DriftDetectedError(ReconcileError):
    """Drift was found. An outcome, not a failure."""


class DriftDetectionError(ReconcileError):
    """The drift check itself failed."""


class SetupError(ReconcileError):
    """Workspace setup failed."""


class PlanError(ReconcileError):
    """Plan failed or could not be saved."""


class ApplyError(ReconcileError):
    """Apply or destroy failed."""


class HealthCheckError(ReconcileError):
    """A health check failed."""


class OutputsError(ReconcileError):
    """Outputs could not be read or written."""


class BreakTheGlassError(ReconcileError):
    """Pass stopped for a break-the-glass session."""


class ReconcileCancelled(ReconcileError):
    """The pass was cancelled between phases."""


class PlanEncodingError(Exception):
    """Unsupported plan payload encoding."""
