"""Reconciler: drives one ManagedResource toward its declared state.

A pass reads the object, checks its source and dependencies, then sets up
a workspace and runs drift detection, plan, apply, outputs and health
checks in order. Status is persisted after each phase so a crash resumes
from the last recorded step.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import requests

from api import conditions as c
from api import status
from api.types import APPROVE_DISABLE, FINALIZER, InventoryEntry, ManagedResource, ObjectKey
from cluster.artifacts import ArtifactFetcher
from cluster.events import EventRecorder
from cluster.store import EVENT_NORMAL, EVENT_WARNING, ResourceStore, SourceArtifact, StoreNotFoundError
from common import format_duration, format_time, utc_now, wait_until
from config import ControllerConfig
from engine.client import CancellableEngine, EngineClient
from engine.errors import EngineCancelled, EngineError
from reconciler.apply import run_apply, should_apply
from reconciler.context import PassContext
from reconciler.dependencies import blocking_dependents, check_dependencies
from reconciler.drift import detect_drift, should_detect_drift
from reconciler.errors import (
    AccessDeniedError,
    ArtifactError,
    BreakTheGlassError,
    DependencyNotReadyError,
    DriftDetectedError,
    ReconcileCancelled,
    ReconcileError,
)
from reconciler.finalizer import finalize
from reconciler.health import do_health_checks, should_do_health_checks
from reconciler.outputs import outputs_may_be_drifted, process_outputs
from reconciler.plan import force_or_auto_apply, run_plan, should_plan
from reconciler.setup import Workspace, provisioned_workspace

logger = logging.getLogger(__name__)

SOURCE_KINDS = ('GitRepository', 'Bucket', 'OCIRepository')
BREAK_THE_GLASS_POLL_INTERVAL = 10.0

MSG_IN_PROGRESS = 'Reconciliation in progress'
MSG_DELETION_IN_PROGRESS = 'Deletion in progress'
MSG_PLAN_GENERATED = 'Plan generated'


@dataclass
class Result:
    """What the caller should do with the object after a pass."""
    requeue: bool = False
    requeue_after: Optional[timedelta] = None


def should_reconcile(resource: ManagedResource) -> tuple[bool, timedelta]:
    """Decide whether to run now; otherwise how long until the interval elapses."""
    if resource.spec.force or resource.is_being_deleted:
        return True, timedelta(0)
    if resource.reconcile_requested():
        return True, timedelta(0)
    st = resource.status
    if st.last_plan_at is None:
        return True, timedelta(0)
    if resource.generation != st.observed_generation:
        return True, timedelta(0)
    if st.plan.pending != '' or should_apply(resource):
        return True, timedelta(0)

    remaining = st.last_plan_at + resource.spec.interval - utc_now()
    if remaining > timedelta(0):
        return False, remaining
    return True, timedelta(0)


def normalize_ready(resource: ManagedResource) -> None:
    """Flip a settled Unknown Ready to True; a plan awaiting approval stays Unknown."""
    ready = resource.status.conditions.get(c.READY)
    if ready is None or ready.status != c.UNKNOWN:
        return
    if ready.reason == c.PLANNED_WITH_CHANGES and ready.message.startswith(MSG_PLAN_GENERATED):
        return
    if ready.reason != c.PROGRESSING:
        resource.status.conditions.set(c.READY, c.TRUE, ready.reason, ready.message, ready.observed_generation)


def _mark_in_progress_if(resource: ManagedResource, *reasons: str) -> None:
    if resource.status.conditions.reason_of(c.READY) in reasons:
        status.progressing(resource, MSG_IN_PROGRESS)


class Reconciler:
    """Reconciles ManagedResources against a store and an execution engine.

    Args:
        store: Where resources, sources, secrets and events live
        engine: Execution engine client
        config: Controller policy flags
        recorder: Event sink, defaults to one writing to store
        fetcher: Artifact downloader
        health_session: Optional requests session for HTTP health checks
    """

    def __init__(
        self,
        store: ResourceStore,
        engine: EngineClient,
        config: Optional[ControllerConfig] = None,
        recorder: Optional[EventRecorder] = None,
        fetcher: Optional[ArtifactFetcher] = None,
        health_session: Optional[requests.Session] = None,
    ):
        self.store = store
        self.engine = engine
        self.config = config or ControllerConfig()
        self.recorder = recorder or EventRecorder(store)
        self.fetcher = fetcher or ArtifactFetcher(retries=self.config.http_retry)
        self.health_session = health_session
        self.break_the_glass_poll = BREAK_THE_GLASS_POLL_INTERVAL

    def _context(self, cancelled: Optional[threading.Event]) -> PassContext:
        return PassContext(
            engine=CancellableEngine(self.engine, cancelled),
            store=self.store,
            recorder=self.recorder,
            fetcher=self.fetcher,
            config=self.config,
        )

    def resolve_source(self, resource: ManagedResource) -> Optional[SourceArtifact]:
        """Look up the source and return its artifact, None when it has none yet.

        Raises:
            AccessDeniedError: Source in another namespace while that is disallowed
            ArtifactError: Source kind unsupported or source missing
        """
        ref = resource.spec.source_ref
        key = ObjectKey(ref.namespace or resource.namespace, ref.name)
        if self.config.no_cross_namespace_refs and key.namespace != resource.namespace:
            raise AccessDeniedError(
                f'cannot access {ref.kind}/{key}, cross-namespace references have been disabled'
            )
        if ref.kind not in SOURCE_KINDS:
            raise ArtifactError(f"source `{ref.name}` kind '{ref.kind}' not supported")
        try:
            source = self.store.get_source(ref.kind, key)
        except StoreNotFoundError as e:
            raise ArtifactError(str(e)) from e
        return source.artifact

    def reconcile_object(self, key: ObjectKey, cancelled: Optional[threading.Event] = None) -> Result:
        """Run one reconcile pass for key.

        Raises:
            ReconcileError: Deletion could not be completed; retry with backoff
        """
        try:
            resource = self.store.get(key)
        except StoreNotFoundError:
            logger.debug(f"[{key}] not found, nothing to do")
            return Result()

        ctx = self._context(cancelled)
        logger.info(f"[{key}] >> Started Generation: {resource.generation} (loop {ctx.loop_id})")

        if FINALIZER not in resource.metadata.finalizers:
            if resource.is_being_deleted:
                return Result()
            resource.metadata.finalizers.append(FINALIZER)
            self.store.update(resource)
            return Result(requeue=True)

        if resource.spec.suspend:
            logger.info(f"[{key}] Reconciliation is suspended for this object")
            return Result()

        run_now, requeue_after = should_reconcile(resource)
        if not run_now:
            logger.info(f"[{key}] Skipping reconciliation, interval has not elapsed. "
                        f"Requeue after {format_duration(requeue_after)}")
            return Result(requeue_after=requeue_after)

        if token := resource.reconcile_requested():
            resource.status.last_handled_reconcile_at = token

        if resource.is_being_deleted and (dependents := blocking_dependents(resource)):
            message = f'Deletion in progress, but blocked. Please delete {", ".join(dependents)} to resume ...'
            status.not_ready(resource, '', c.DELETION_BLOCKED_BY_DEPENDANTS, message)
            ctx.patch_status(resource)
            return Result(requeue_after=resource.get_retry_interval())

        result = self._resolve_artifact(ctx, resource)
        if result is not None:
            return result
        revision = ctx.revision

        if resource.spec.depends_on and not resource.is_being_deleted:
            result = self._check_dependencies(ctx, resource)
            if result is not None:
                return result
            logger.info(f"[{key}] All dependencies are ready, proceeding with reconciliation")
        _mark_in_progress_if(resource, c.ACCESS_DENIED, c.DEPENDENCY_NOT_READY)

        if resource.status.conditions.status_of(c.READY) != c.UNKNOWN:
            message = MSG_DELETION_IN_PROGRESS if resource.is_being_deleted else MSG_IN_PROGRESS
            status.progressing(resource, message)
            ctx.patch_status(resource)

        if (revision != resource.status.last_attempted_revision
                or resource.generation != resource.status.observed_generation):
            logger.info(f"[{key}] Reset reconciliation failures count. Reason: resource changed")
            status.reset_retry(resource)
            ctx.patch_status(resource)

        if not resource.is_being_deleted:
            self._clear_stale_plan(ctx, resource)
            if (resource.status.plan.pending != ''
                    and not force_or_auto_apply(resource)
                    and not should_apply(resource)):
                logger.info(f"[{key}] Reconciliation is stopped to wait for a manual approve")
                ctx.patch_status(resource)
                return Result()

        if resource.is_being_deleted:
            return self._finalize(ctx, resource)

        if not resource.should_retry():
            logger.info(f"[{key}] Resource reached maximum number of retries "
                        f"({resource.status.reconciliation_failures}/{resource.spec.remediation_retries}). "
                        f"Generation: {resource.generation}")
            status.reached_retry_limit(resource)
            ctx.patch_status(resource)
            return Result()

        return self._run(ctx, resource)

    def _resolve_artifact(self, ctx: PassContext, resource: ManagedResource) -> Optional[Result]:
        """Bind the source artifact to ctx, or return the result that ends the pass."""
        try:
            artifact = self.resolve_source(resource)
        except AccessDeniedError as e:
            status.not_ready(resource, '', c.ACCESS_DENIED, str(e))
            self.store.record_event(resource, EVENT_WARNING, c.ACCESS_DENIED, str(e))
            ctx.patch_status(resource)
            return Result()
        except ArtifactError as e:
            if resource.is_being_deleted:
                logger.warning(f"[{resource.key}] {e}, finalizing without a source")
                return None
            status.not_ready(resource, '', c.ARTIFACT_FAILED, str(e))
            self.store.record_event(resource, EVENT_WARNING, c.ARTIFACT_FAILED, str(e))
            ctx.patch_status(resource)
            return Result(requeue_after=resource.get_retry_interval())
        _mark_in_progress_if(resource, c.ACCESS_DENIED, c.ARTIFACT_FAILED)

        if artifact is None:
            if resource.is_being_deleted:
                return None
            message = 'Source is not ready, artifact not found'
            logger.info(f"[{resource.key}] {message}")
            status.not_ready(resource, '', c.ARTIFACT_FAILED, message)
            ctx.patch_status(resource)
            return Result(requeue_after=resource.get_retry_interval())
        _mark_in_progress_if(resource, c.ARTIFACT_FAILED)

        ctx.artifact = artifact
        ctx.revision = artifact.revision
        return None

    def _check_dependencies(self, ctx: PassContext, resource: ManagedResource) -> Optional[Result]:
        try:
            check_dependencies(self.store, resource, ctx.revision, self.config.no_cross_namespace_refs)
        except AccessDeniedError as e:
            status.not_ready(resource, ctx.revision, c.ACCESS_DENIED, str(e))
            ctx.patch_status(resource)
            return Result()
        except DependencyNotReadyError as e:
            status.not_ready(resource, ctx.revision, c.DEPENDENCY_NOT_READY, str(e))
            ctx.patch_status(resource)
            retry = resource.get_retry_interval()
            message = f'Dependencies do not meet ready condition, retrying in {format_duration(retry)}'
            logger.info(f"[{resource.key}] {message}")
            self.store.record_event(resource, EVENT_NORMAL, c.DEPENDENCY_NOT_READY, message)
            return Result(requeue_after=retry)
        return None

    def _clear_stale_plan(self, ctx: PassContext, resource: ManagedResource) -> None:
        """Drop a pending plan a new revision made stale (replan or plan-only)."""
        st = resource.status
        if ctx.revision == st.last_attempted_revision:
            return
        approve_plan = resource.spec.approve_plan
        replan = (not should_apply(resource)
                  and approve_plan.startswith('replan')
                  and ('re' + st.plan.pending).startswith(approve_plan))
        if replan or resource.spec.plan_only:
            logger.info(f"[{resource.key}] Clearing pending plan {st.plan.pending!r} for new revision")
            st.plan.pending = ''
            ctx.patch_status(resource)

    def _finalize(self, ctx: PassContext, resource: ManagedResource) -> Result:
        try:
            finalize(ctx, resource)
        except (ReconcileError, EngineCancelled) as e:
            logger.error(f"[{resource.key}] Finalize failed: {e}")
            ctx.patch_status(resource)
            raise
        return Result()

    def _run(self, ctx: PassContext, resource: ManagedResource) -> Result:
        key = resource.key
        revision = ctx.revision
        error = None
        try:
            self.reconcile_pass(ctx, resource)
        except (ReconcileCancelled, EngineCancelled):
            logger.warning(f"[{key}] Reconciliation cancelled")
            ctx.patch_status(resource)
            return Result()
        except ReconcileError as e:
            error = e

        if error is None:
            logger.info(f"[{key}] Reset reconciliation failures count. Reason: successful reconciliation")
            status.reset_retry(resource)
        else:
            resource.status.reconciliation_failures += 1
        ctx.patch_status(resource)

        retry = resource.get_retry_interval()
        if isinstance(error, DriftDetectedError):
            logger.error(f"[{key}] Drift detected at {revision}, next try in {format_duration(retry)}")
            return Result(requeue_after=retry)
        if error is not None:
            logger.error(f"[{key}] Reconciliation failed at {revision}: {error}, "
                         f"next try in {format_duration(retry)}")
            self.store.record_event(
                resource, EVENT_WARNING, c.RECONCILIATION_FAILED, str(error), {'revision': revision}
            )
            if resource.spec.remediation_retries is not None:
                logger.info(f"[{key}] Reconciliation failed, retry "
                            f"({resource.status.reconciliation_failures}/{resource.spec.remediation_retries}) "
                            f"after {format_duration(retry)}. Generation: {resource.generation}")
            return Result(requeue_after=retry)

        logger.info(f"[{key}] Reconciliation completed. Generation: {resource.generation}")
        if resource.status.plan.pending != '' and not force_or_auto_apply(resource):
            logger.info(f"[{key}] Reconciliation is stopped to wait for manual operations")
            return Result()
        return Result(requeue_after=resource.spec.interval)

    def reconcile_pass(self, ctx: PassContext, resource: ManagedResource) -> None:
        """Set up a workspace and run every phase that applies.

        Raises:
            ReconcileError: A phase failed; resource.status records why
        """
        with provisioned_workspace(ctx, resource) as workspace:
            self.break_the_glass(ctx, resource)

            if should_detect_drift(resource, ctx.revision):
                ctx.check_cancelled()
                try:
                    detect_drift(ctx, resource, workspace)
                except DriftDetectedError:
                    if not force_or_auto_apply(resource):
                        raise
                    ctx.patch_status(resource)
                else:
                    if outputs_may_be_drifted(ctx, resource):
                        process_outputs(ctx, resource, workspace)
                    return

            if resource.spec.approve_plan == APPROVE_DISABLE:
                logger.info(f"[{resource.key}] approve plan disabled")
                return

            if should_plan(resource):
                ctx.check_cancelled()
                run_plan(ctx, resource, workspace)
                ctx.patch_status(resource)

            if should_apply(resource):
                ctx.check_cancelled()
                run_apply(ctx, resource, workspace)
                ctx.patch_status(resource)
            else:
                logger.info(f"[{resource.key}] should apply == false")

            ctx.check_cancelled()
            process_outputs(ctx, resource, workspace)

            if should_do_health_checks(resource):
                do_health_checks(ctx, resource, self.health_session)
                ctx.patch_status(resource)

            self.refresh_inventory(ctx, resource, workspace)
            normalize_ready(resource)

    def break_the_glass(self, ctx: PassContext, resource: ManagedResource) -> None:
        """Hold the pass while an operator works in the workspace by hand.

        Raises:
            BreakTheGlassError: Always, once requested; the pass ends here
        """
        if not resource.break_the_glass_requested():
            return

        if not self.config.allow_break_the_glass:
            status.progressing(resource, 'Breaking the glass is not allowed')
            ctx.patch_status(resource)
            logger.info(f"[{resource.key}] break the glass is not allowed")
            raise BreakTheGlassError('break the glass is not allowed')

        status.progressing(resource, 'Breaking the glass ...')
        ctx.patch_status(resource)
        try:
            ctx.engine.start_break_the_glass_session(resource.namespace, resource.name)
            ended = wait_until(
                lambda: ctx.engine.has_break_the_glass_session_done(resource.namespace, resource.name),
                interval=self.break_the_glass_poll,
                cancelled=lambda: ctx.engine.cancelled,
            )
        except EngineError as e:
            raise BreakTheGlassError(f'error during break the glass session: {e}') from e
        if not ended:
            raise ReconcileCancelled(f'break the glass session for {resource.key} cancelled')

        status.progressing(resource, 'Initializing')
        ctx.patch_status(resource)
        raise BreakTheGlassError(f'break the glass session has ended at {format_time(utc_now())}')

    def refresh_inventory(self, ctx: PassContext, resource: ManagedResource, workspace: Workspace) -> None:
        """Fill a missing inventory, or drop it when tracking is off."""
        if not resource.spec.enable_inventory:
            resource.status.inventory = None
            return
        if resource.status.inventory is not None:
            return
        try:
            items = ctx.engine.get_inventory(workspace.instance)
        except EngineError as e:
            logger.error(f"[{resource.key}] error getting inventory: {e}")
            return
        logger.info(f"[{resource.key}] got inventory - entries count: {len(items)}")
        if items:
            resource.status.inventory = [
                InventoryEntry(name=i.name, type=i.type, identifier=i.identifier) for i in items
            ]
