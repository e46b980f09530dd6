"""Status transitions for a ManagedResource.

Each helper mutates resource.status in place and returns the resource,
so phases can record progress before raising.
"""

from typing import Optional

from api import conditions as c
from api.planid import get_approve_message, get_plan_id
from api.types import ManagedResource
from common import trim_message, utc_now


def set_readiness(resource: ManagedResource, status: str, reason: str, message: str, revision: str = '') -> ManagedResource:
    resource.status.conditions.set(c.READY, status, reason, message)
    resource.status.observed_generation = resource.generation
    if revision:
        resource.status.last_attempted_revision = revision
    return resource


def progressing(resource: ManagedResource, message: str) -> ManagedResource:
    resource.status.conditions.set(c.READY, c.UNKNOWN, c.PROGRESSING, message)
    return resource


def not_ready(resource: ManagedResource, revision: str, reason: str, message: str) -> ManagedResource:
    return set_readiness(resource, c.FALSE, reason, trim_message(message), revision)


def applying(resource: ManagedResource, revision: str, message: str) -> ManagedResource:
    resource.status.conditions.set(c.APPLY, c.UNKNOWN, c.PROGRESSING, message)
    return set_readiness(resource, c.UNKNOWN, c.PROGRESSING, message, revision)


def applied(
    resource: ManagedResource,
    revision: str,
    message: str,
    is_destroy: bool,
    entries: Optional[list] = None,
) -> ManagedResource:
    status = resource.status
    status.conditions.set(c.APPLY, c.TRUE, c.APPLIED_SUCCEEDED, message)
    if status.plan.is_drift_detection_plan:
        status.last_applied_by_drift_detection_at = utc_now()

    status.plan.last_applied = status.plan.pending
    status.plan.pending = ''
    status.plan.is_destroy_plan = is_destroy
    status.plan.is_drift_detection_plan = False
    if revision:
        status.last_applied_revision = revision
    if entries:
        status.inventory = list(entries)

    return set_readiness(resource, c.UNKNOWN, c.APPLIED_SUCCEEDED, f'{message}: {revision}', revision)


def apply_failed_reset_plan(resource: ManagedResource, revision: str, reason: str, message: str) -> ManagedResource:
    """Record an apply failure and drop the pending plan so the next pass replans."""
    resource.status.conditions.set(c.APPLY, c.FALSE, c.APPLIED_FAILED, message)
    resource.status.plan.pending = ''
    return set_readiness(resource, c.FALSE, reason, trim_message(message), revision)


def planned_with_changes(resource: ManagedResource, revision: str, force_or_auto_apply: bool, message: str) -> ManagedResource:
    status = resource.status
    plan_id = get_plan_id(revision)

    status.conditions.set(c.PLAN, c.TRUE, c.PLANNED_WITH_CHANGES, message)
    status.plan.pending = plan_id
    status.plan.is_destroy_plan = resource.spec.destroy
    status.plan.is_drift_detection_plan = resource.has_drift()
    if revision:
        status.last_attempted_revision = revision
        status.last_planned_revision = revision
    status.last_plan_at = utc_now()

    if resource.spec.plan_only:
        ready_message = f'{message}: This object is in the plan only mode.'
    elif force_or_auto_apply:
        ready_message = message
    else:
        ready_message = get_approve_message(plan_id, message)
    return set_readiness(resource, c.UNKNOWN, c.PLANNED_WITH_CHANGES, ready_message, revision)


def planned_no_changes(resource: ManagedResource, revision: str, message: str) -> ManagedResource:
    status = resource.status
    status.conditions.set(c.PLAN, c.FALSE, c.PLANNED_NO_CHANGES, message)
    status.plan.pending = ''
    status.plan.is_destroy_plan = resource.spec.destroy
    status.plan.is_drift_detection_plan = False
    if revision:
        status.last_attempted_revision = revision
        status.last_planned_revision = revision
    status.last_plan_at = utc_now()
    return set_readiness(resource, c.TRUE, c.PLANNED_NO_CHANGES, f'{message}: {revision}', revision)


def drift_detected(resource: ManagedResource, revision: str, message: str) -> ManagedResource:
    resource.status.last_drift_detected_at = utc_now()
    return set_readiness(resource, c.FALSE, c.DRIFT_DETECTED, trim_message(message), revision)


def no_drift(resource: ManagedResource, revision: str, message: str) -> ManagedResource:
    return set_readiness(resource, c.TRUE, c.NO_DRIFT, f'{message}: {revision}', revision)


def outputs_available(resource: ManagedResource, names: list, message: str) -> ManagedResource:
    resource.status.conditions.set(c.OUTPUT, c.TRUE, c.OUTPUTS_AVAILABLE, message)
    resource.status.available_outputs = list(names)
    return resource


def outputs_written(resource: ManagedResource, revision: str, message: str) -> ManagedResource:
    resource.status.conditions.set(c.OUTPUT, c.TRUE, c.OUTPUTS_WRITTEN, message)
    return set_readiness(resource, c.TRUE, c.OUTPUTS_WRITTEN, f'{message}: {revision}', revision)


def health_check_failed(resource: ManagedResource, message: str) -> ManagedResource:
    resource.status.conditions.set(c.HEALTH_CHECK, c.FALSE, c.HEALTH_CHECKS_FAILED, message)
    return resource


def health_check_succeeded(resource: ManagedResource, message: str) -> ManagedResource:
    resource.status.conditions.set(c.HEALTH_CHECK, c.TRUE, c.HEALTH_CHECKS_SUCCEEDED, message)
    return resource


def state_locked(resource: ManagedResource, lock_id: str, message: str) -> ManagedResource:
    lock = resource.status.lock
    resource.status.conditions.set(c.STATE_LOCKED, c.TRUE, c.LOCK_HELD, message)
    set_readiness(resource, c.FALSE, c.LOCK_HELD, trim_message(message))
    if lock.pending and lock.last_applied != lock.pending:
        lock.last_applied = lock.pending
    lock.pending = lock_id
    return resource


def force_unlocked(resource: ManagedResource, message: str) -> ManagedResource:
    lock = resource.status.lock
    resource.status.conditions.set(c.STATE_LOCKED, c.FALSE, c.FORCE_UNLOCK, message)
    if lock.pending and lock.last_applied != lock.pending:
        lock.last_applied = lock.pending
    lock.pending = ''
    return resource


def reached_retry_limit(resource: ManagedResource) -> ManagedResource:
    resource.status.conditions.set(
        c.STALLED, c.TRUE, c.RETRY_LIMIT_REACHED, 'Resource reached maximum number of retries.'
    )
    return resource


def reset_retry(resource: ManagedResource) -> ManagedResource:
    resource.status.conditions.remove(c.STALLED)
    resource.status.reconciliation_failures = 0
    return resource
