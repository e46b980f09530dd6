"""Deletion: optional destroy, secret cleanup, finalizer and edge removal."""

import logging

from api import conditions as c
from api.types import FINALIZER, ManagedResource
from cluster.store import StoreNotFoundError
from common import retry_call
from engine.errors import EngineError, EngineNotFoundError, EngineUnavailableError
from reconciler.apply import run_apply
from reconciler.context import PassContext
from reconciler.dependencies import release_dependencies
from reconciler.errors import ReconcileError
from reconciler.plan import NOTHING_TO_DESTROY, run_plan
from reconciler.setup import provisioned_workspace

logger = logging.getLogger(__name__)

FINALIZE_SECRETS_ATTEMPTS = 3
FINALIZE_SECRETS_INTERVAL = 5.0


def nothing_to_destroy(resource: ManagedResource) -> bool:
    plan = resource.status.conditions.get(c.PLAN)
    return (plan is not None
            and plan.reason == c.PLANNED_NO_CHANGES
            and plan.message == NOTHING_TO_DESTROY)


def destroy_on_deletion(ctx: PassContext, resource: ManagedResource) -> None:
    """Plan a destroy and apply it unless there is nothing to destroy."""
    with provisioned_workspace(ctx, resource) as workspace:
        ctx.check_cancelled()
        run_plan(ctx, resource, workspace)
        ctx.patch_status(resource)

        if nothing_to_destroy(resource):
            logger.info(f"[{resource.key}] Nothing to destroy")
            return

        ctx.check_cancelled()
        run_apply(ctx, resource, workspace)
        ctx.patch_status(resource)
    logger.info(f"[{resource.key}] finalizing destroyResourcesOnDeletion: ok")


def finalize_secrets(ctx: PassContext, resource: ManagedResource) -> None:
    """Remove plan, state and output secrets, retrying while the engine is unreachable."""
    wots = resource.spec.write_outputs_to_secret
    output_secret = wots.name if wots is not None else ''

    def call():
        return ctx.engine.finalize_secrets(
            resource.namespace, resource.name, resource.workspace_name,
            bool(output_secret), output_secret,
        )

    try:
        message = retry_call(
            call,
            attempts=FINALIZE_SECRETS_ATTEMPTS,
            interval=FINALIZE_SECRETS_INTERVAL,
            retry_on=(EngineUnavailableError,),
            description=f'[{resource.key}] finalize secrets',
        )
    except EngineNotFoundError:
        logger.info(f"[{resource.key}] No secrets left to finalize")
        return
    except EngineError as e:
        raise ReconcileError(f'error finalizing secrets: {e}') from e
    logger.info(f"[{resource.key}] finalizing secrets: {message}")


def remove_finalizer(ctx: PassContext, resource: ManagedResource) -> None:
    try:
        current = ctx.store.get(resource.key)
    except StoreNotFoundError:
        return
    if FINALIZER in current.metadata.finalizers:
        current.metadata.finalizers.remove(FINALIZER)
        ctx.store.update(current)


def finalize(ctx: PassContext, resource: ManagedResource) -> None:
    """Run the deletion path for a resource whose dependents are gone.

    Raises:
        ReconcileError: Destroy or secret cleanup failed; the finalizer stays
    """
    if resource.spec.destroy_resources_on_deletion:
        if ctx.artifact is None:
            logger.warning(f"[{resource.key}] Source unavailable, skipping destroy on deletion")
        else:
            destroy_on_deletion(ctx, resource)

    finalize_secrets(ctx, resource)
    remove_finalizer(ctx, resource)
    release_dependencies(ctx.store, resource)
    logger.info(f"[{resource.key}] Finalized")
