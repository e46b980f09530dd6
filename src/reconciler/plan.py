"""Plan phase."""

import logging

from api import conditions as c
from api import status
from api.backend import backend_completely_disabled
from api.planid import get_approve_message, get_plan_id
from api.types import APPROVE_AUTO, ManagedResource
from cluster.events import SEVERITY_INFO
from common import format_duration
from engine.client import PlanRequest
from engine.errors import EngineError
from reconciler.context import PassContext, report_engine_error
from reconciler.errors import PlanError
from reconciler.setup import Workspace

logger = logging.getLogger(__name__)

PLAN_FILENAME = 'tfplan'
NOTHING_TO_DESTROY = 'No objects need to be destroyed'


def force_or_auto_apply(resource: ManagedResource) -> bool:
    return resource.spec.force or resource.spec.approve_plan == APPROVE_AUTO


def should_plan(resource: ManagedResource) -> bool:
    """Plan when forced or when no plan is pending; never stack a second pending plan."""
    if resource.spec.force:
        return True
    return resource.status.plan.pending == ''


def is_destroy_plan(resource: ManagedResource) -> bool:
    return resource.spec.destroy or (
        resource.is_being_deleted and resource.spec.destroy_resources_on_deletion
    )


def run_plan(ctx: PassContext, resource: ManagedResource, workspace: Workspace) -> None:
    """Plan, save the plan and record the outcome on the resource.

    Raises:
        PlanError: Plan or save failed (status already records why)
    """
    revision = ctx.revision
    backend_disabled = backend_completely_disabled(resource)

    status.progressing(resource, 'Terraform Planning')
    ctx.patch_status(resource)

    request = PlanRequest(
        instance=workspace.instance,
        out='' if backend_disabled else PLAN_FILENAME,
        refresh=True,
        targets=list(resource.spec.targets),
        destroy=is_destroy_plan(resource),
    )
    if (tfstate := resource.spec.tfstate) is not None:
        request.lock_timeout = format_duration(tfstate.lock_timeout)
        request.disable_lock = tfstate.disable_plan_lock

    logger.info(f"[{resource.key}] Planning {revision} (destroy={request.destroy})")
    try:
        reply = ctx.engine.plan(request)
    except EngineError as e:
        report_engine_error(ctx, resource, e, 'Plan')
        message = f'error running Plan: {e}'
        status.not_ready(resource, revision, c.PLAN_FAILED, message)
        raise PlanError(message) from e

    logger.info(f"[{resource.key}] plan: {reply.message}, found drift: {reply.drifted}")

    if request.destroy and not reply.plan_created:
        status.planned_no_changes(resource, revision, NOTHING_TO_DESTROY)
        return

    try:
        ctx.engine.save_plan(
            workspace.instance, resource.name, resource.namespace,
            resource.metadata.uid, revision, backend_disabled,
        )
    except EngineError as e:
        message = f'error saving plan secret: {e}'
        status.not_ready(resource, revision, c.PLAN_FAILED, message)
        raise PlanError(message) from e

    if reply.drifted:
        auto = force_or_auto_apply(resource)
        if not auto:
            plan_id = get_plan_id(revision)
            ctx.event(resource, SEVERITY_INFO, 'Planned.\n' + get_approve_message(plan_id, 'Plan generated'))
        status.planned_with_changes(resource, revision, auto, 'Plan generated')
    else:
        status.planned_no_changes(resource, revision, 'Plan no changes')
