"""Drift detection.

A refresh-only plan is written to its own file so it never overwrites a
plan that is waiting for approval.
"""

import logging

from api import conditions as c
from api import status
from api.backend import backend_completely_disabled
from api.types import APPROVE_DISABLE, ManagedResource
from cluster.events import SEVERITY_ERROR
from engine.client import PlanRequest
from engine.errors import EngineError
from reconciler.context import PassContext, report_engine_error
from reconciler.errors import DriftDetectedError, DriftDetectionError
from reconciler.setup import Workspace

logger = logging.getLogger(__name__)

DRIFT_FILENAME = 'tfdrift'
NOT_AVAILABLE = 'not available'

# Printed by some terraform versions for output-only changes
OUTPUT_ONLY_TRAILER = (
    'You can apply this plan to save these new output values to the Terraform\n'
    'state, without changing any real infrastructure.'
)


def should_detect_drift(resource: ManagedResource, revision: str) -> bool:
    """Decide whether to run a drift check. Order matters."""
    spec = resource.spec
    st = resource.status

    if spec.disable_drift_detection:
        return False
    if spec.destroy:
        return False
    if spec.approve_plan == APPROVE_DISABLE:
        return True
    # Brand new object
    if st.last_attempted_revision == '' and st.last_planned_revision == '' and st.last_applied_revision == '':
        return False

    no_pending = st.plan.pending == ''
    # Steady state
    if (st.last_attempted_revision == st.last_applied_revision == st.last_planned_revision == revision
            and no_pending):
        return True
    # Unrelated source change planned to a no-op, applied revision lags
    if st.last_attempted_revision == st.last_planned_revision == revision and no_pending:
        return True
    return False


def detect_drift(ctx: PassContext, resource: ManagedResource, workspace: Workspace) -> None:
    """Run a refresh-only plan and record NoDrift or DriftDetected.

    Raises:
        DriftDetectedError: Drift found (status records the diff)
        DriftDetectionError: The check failed
    """
    revision = ctx.revision
    backend_disabled = backend_completely_disabled(resource)

    request = PlanRequest(
        instance=workspace.instance,
        out='' if backend_disabled else DRIFT_FILENAME,
        refresh=True,
        targets=list(resource.spec.targets),
    )
    logger.info(f"[{resource.key}] Checking for drift at {revision}")
    try:
        reply = ctx.engine.plan(request)
    except EngineError as e:
        report_engine_error(ctx, resource, e, 'Drift detection')
        message = f'error running Plan: {e}'
        status.not_ready(resource, revision, c.DRIFT_DETECTION_FAILED, message)
        raise DriftDetectionError(message) from e
    logger.info(f"[{resource.key}] plan for drift: {reply.message} found drift: {reply.drifted}")

    if not reply.drifted:
        status.no_drift(resource, revision, 'No drift')
        return

    if backend_disabled:
        raw_output = NOT_AVAILABLE
    else:
        try:
            raw_output = ctx.engine.show_plan_file_raw(workspace.instance, DRIFT_FILENAME)
        except EngineError as e:
            status.not_ready(resource, revision, c.DRIFT_DETECTION_FAILED, str(e))
            raise DriftDetectionError(str(e)) from e

    raw_output = raw_output.replace(OUTPUT_ONLY_TRAILER, '', 1)
    ctx.event(resource, SEVERITY_ERROR, f'Drift detected.\n{raw_output}')
    status.drift_detected(resource, revision, raw_output)
    raise DriftDetectedError(c.DRIFT_DETECTED)
