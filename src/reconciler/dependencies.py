"""Dependency ordering between managed resources.

A resource that depends on another registers itself in the other's
depended-by set. The dependency cannot finish deletion while that set
is non-empty, and the dependent retracts its edges once it is gone.
"""

import logging

from api import conditions as c
from api.types import ManagedResource, ObjectKey
from cluster.store import ResourceStore, StoreNotFoundError
from reconciler.errors import AccessDeniedError, DependencyNotReadyError

logger = logging.getLogger(__name__)


def dependency_keys(resource: ManagedResource) -> list[ObjectKey]:
    """Declared dependencies, defaulting to the resource's own namespace."""
    return [ObjectKey(ref.namespace or resource.namespace, ref.name) for ref in resource.spec.depends_on]


def blocking_dependents(resource: ManagedResource) -> list[str]:
    return list(resource.metadata.depended_by)


def _same_source(a: ManagedResource, b: ManagedResource) -> bool:
    ref_a, ref_b = a.spec.source_ref, b.spec.source_ref
    return (ref_a.kind, ref_a.name, ref_a.namespace) == (ref_b.kind, ref_b.name, ref_b.namespace)


def check_dependencies(
    store: ResourceStore,
    resource: ManagedResource,
    revision: str,
    no_cross_namespace_refs: bool = False,
) -> None:
    """Verify every dependency is ready, registering this resource on each.

    Raises:
        AccessDeniedError: A dependency lives in another namespace while that is disallowed
        DependencyNotReadyError: A dependency is missing or not ready yet
    """
    for key in dependency_keys(resource):
        if no_cross_namespace_refs and key.namespace != resource.namespace:
            raise AccessDeniedError(f'cannot access {key}, cross-namespace references have been disabled')

        try:
            dependency = store.get(key)
        except StoreNotFoundError as e:
            raise DependencyNotReadyError(f"unable to get '{key}' dependency: {e}") from e

        if not dependency.is_being_deleted and str(resource.key) not in dependency.metadata.depended_by:
            store.add_depended_by(key, resource.key)
            logger.debug(f"[{resource.key}] registered as dependent of {key}")

        if (dependency.generation != dependency.status.observed_generation
                or not dependency.status.conditions.is_true(c.READY)):
            raise DependencyNotReadyError(f"dependency '{key}' is not ready")

        if (_same_source(resource, dependency)
                and revision != dependency.status.last_applied_revision
                and revision != dependency.status.last_planned_revision):
            raise DependencyNotReadyError(f"dependency '{key}' is not updated yet")

        wots = dependency.spec.write_outputs_to_secret
        if wots is not None:
            secret_key = ObjectKey(dependency.namespace, wots.name)
            try:
                store.get_secret(secret_key)
            except StoreNotFoundError as e:
                raise DependencyNotReadyError(
                    f"dependency output secret: '{secret_key}' of '{key}' is not ready yet"
                ) from e


def release_dependencies(store: ResourceStore, resource: ManagedResource) -> None:
    """Retract this resource from the depended-by set of each dependency."""
    for key in dependency_keys(resource):
        try:
            store.remove_depended_by(key, resource.key)
        except StoreNotFoundError:
            logger.debug(f"[{resource.key}] dependency {key} already gone")
            continue
        logger.info(f"[{resource.key}] released dependency {key}")
