"""Apply phase."""

import logging

from api import conditions as c
from api import status
from api.backend import backend_completely_disabled
from api.planid import approves
from api.types import APPROVE_AUTO, InventoryEntry, ManagedResource
from cluster.events import SEVERITY_INFO
from engine.client import ApplyRequest
from engine.errors import EngineError
from reconciler.context import PassContext, report_engine_error
from reconciler.errors import ApplyError
from reconciler.plan import PLAN_FILENAME
from reconciler.setup import Workspace

logger = logging.getLogger(__name__)


def should_apply(resource: ManagedResource) -> bool:
    """Decide whether the pending plan is approved.

    force wins; an empty approvePlan never applies; `auto` applies any
    pending plan; otherwise approvePlan must equal the pending id or be a
    prefix of it.
    """
    if resource.spec.force:
        return True
    approve_plan = resource.spec.approve_plan
    if approve_plan == '':
        return False
    pending = resource.status.plan.pending
    if approve_plan == APPROVE_AUTO and pending != '':
        return True
    return approves(approve_plan, pending)


def _fail_and_reset(resource: ManagedResource, revision: str, message: str) -> ApplyError:
    status.apply_failed_reset_plan(resource, revision, c.APPLY_FAILED, message)
    logger.error(f"[{resource.key}] {message}")
    return ApplyError(message)


def run_apply(ctx: PassContext, resource: ManagedResource, workspace: Workspace) -> None:
    """Load the pending plan and apply it (or destroy, without a backend).

    Any failure drops the pending plan so the next pass plans afresh.

    Raises:
        ApplyError: Load, apply, destroy or inventory failed
    """
    revision = ctx.revision
    engine = ctx.engine
    backend_disabled = backend_completely_disabled(resource)

    status.progressing(resource, 'Applying')
    ctx.patch_status(resource)

    try:
        message = engine.load_plan(
            workspace.instance, resource.name, resource.namespace,
            backend_disabled, resource.status.plan.pending,
        )
    except EngineError as e:
        status.not_ready(resource, revision, c.APPLY_FAILED, str(e))
        raise ApplyError(f'error loading plan: {e}') from e
    logger.info(f"[{resource.key}] load tf plan: {message}")

    status.applying(resource, revision, 'Apply started')
    ctx.patch_status(resource)

    entries = []
    if backend_disabled and resource.spec.destroy:
        try:
            message = engine.destroy(workspace.instance, list(resource.spec.targets))
        except EngineError as e:
            report_engine_error(ctx, resource, e, 'Destroy')
            raise _fail_and_reset(resource, revision, f'error running Destroy: {e}') from e
        logger.info(f"[{resource.key}] destroy: {message}")
        is_destroy = True
    else:
        request = ApplyRequest(
            instance=workspace.instance,
            dir_or_plan='' if backend_disabled else PLAN_FILENAME,
            refresh_before_apply=resource.spec.refresh_before_apply,
            targets=list(resource.spec.targets),
            parallelism=resource.spec.parallelism,
        )
        try:
            message = engine.apply(request)
        except EngineError as e:
            report_engine_error(ctx, resource, e, 'Apply')
            raise _fail_and_reset(resource, revision, f'error running Apply: {e}') from e
        logger.info(f"[{resource.key}] apply: {message}")
        is_destroy = resource.status.plan.is_destroy_plan

        if resource.spec.enable_inventory and not is_destroy:
            try:
                items = engine.get_inventory(workspace.instance)
            except EngineError as e:
                raise _fail_and_reset(resource, revision, f'error getting inventory after Apply: {e}') from e
            entries = [InventoryEntry(name=i.name, type=i.type, identifier=i.identifier) for i in items]
            logger.info(f"[{resource.key}] got inventory - entries count: {len(entries)}")

    message = 'Destroy applied successfully' if is_destroy else 'Applied successfully'
    ctx.event(resource, SEVERITY_INFO, message)
    status.applied(resource, revision, message, is_destroy, entries)
    if is_destroy:
        resource.status.inventory = None
