"""Per-pass collaborators handed to every phase."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from api import status
from api.types import ManagedResource
from cluster.artifacts import ArtifactFetcher
from cluster.events import EventRecorder, SEVERITY_ERROR
from cluster.store import ResourceStore, SourceArtifact
from config import ControllerConfig
from engine.client import CancellableEngine
from engine.errors import EngineError
from reconciler.errors import ReconcileCancelled

logger = logging.getLogger(__name__)


@dataclass
class PassContext:
    """Everything one reconcile pass needs, bound to one revision.

    Attributes:
        engine: Engine client that refuses calls once the pass is cancelled
        revision: Source revision driving this pass
        loop_id: Correlation id passed to the engine and logged
        artifact: Source artifact for this revision, None while deleting without one
    """
    engine: CancellableEngine
    store: ResourceStore
    recorder: EventRecorder
    fetcher: ArtifactFetcher
    config: ControllerConfig
    revision: str = ''
    artifact: Optional[SourceArtifact] = None
    loop_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def patch_status(self, resource: ManagedResource) -> None:
        self.store.patch_status(resource.key, resource.status)

    def event(self, resource: ManagedResource, severity: str, message: str, reason: Optional[str] = None) -> None:
        self.recorder.event(resource, self.revision, severity, message, reason=reason)

    def check_cancelled(self) -> None:
        if self.engine.cancelled:
            raise ReconcileCancelled(f"reconcile pass {self.loop_id} cancelled")


def lock_message(lock_identifier: str) -> str:
    return f'Terraform Locked with Lock Identifier: {lock_identifier}'


def report_engine_error(ctx: PassContext, resource: ManagedResource, error: EngineError, operation: str) -> None:
    """Emit the failure event, recording the lock when the engine names one."""
    if error.lock_identifier:
        ctx.event(
            resource, SEVERITY_ERROR,
            f'{operation} error: State locked with Lock Identifier {error.lock_identifier}',
        )
        status.state_locked(resource, error.lock_identifier, lock_message(error.lock_identifier))
    else:
        ctx.event(resource, SEVERITY_ERROR, f'{operation} error: {error}')
