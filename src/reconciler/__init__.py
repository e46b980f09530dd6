"""Reconciliation of ManagedResources: phases and the orchestrating Reconciler."""

from reconciler.core import Reconciler, Result, normalize_ready, should_reconcile
from reconciler.encoding import decode_plan, encode_plan
from reconciler.errors import (
    AccessDeniedError,
    ApplyError,
    ArtifactError,
    BreakTheGlassError,
    DependencyNotReadyError,
    DriftDetectedError,
    DriftDetectionError,
    HealthCheckError,
    OutputsError,
    PlanEncodingError,
    PlanError,
    ReconcileCancelled,
    ReconcileError,
    SetupError,
)

__all__ = [
    # Orchestration
    "Reconciler",
    "Result",
    "normalize_ready",
    "should_reconcile",
    # Plan payloads
    "decode_plan",
    "encode_plan",
    # Errors
    "AccessDeniedError",
    "ApplyError",
    "ArtifactError",
    "BreakTheGlassError",
    "DependencyNotReadyError",
    "DriftDetectedError",
    "DriftDetectionError",
    "HealthCheckError",
    "OutputsError",
    "PlanEncodingError",
    "PlanError",
    "ReconcileCancelled",
    "ReconcileError",
    "SetupError",
]
