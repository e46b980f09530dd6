"""Kubernetes-backed ResourceStore.

Managed resources are custom objects. Dependency edges are stored on the
dependency as finalizers `tf.dependency.of.<namespace>/<name>`, which is
what keeps the cluster from deleting it while a dependent still exists.
"""

import base64
import logging
import threading
import time
from typing import Callable, Optional

from kubernetes import client, config, watch as k8s_watch
from kubernetes.client.rest import ApiException

from api.types import API_VERSION, ManagedResource, ObjectKey, ResourceStatus
from cluster.store import SourceArtifact, SourceObject, StoreConflictError, StoreNotFoundError
from common import format_time, utc_now
from config import ConfigError

logger = logging.getLogger(__name__)

GROUP, VERSION = API_VERSION.split('/')
PLURAL = 'terraforms'
SOURCE_GROUP = 'source.toolkit.fluxcd.io'
SOURCE_VERSION = 'v1'
SOURCE_PLURALS = {
    'GitRepository': 'gitrepositories',
    'Bucket': 'buckets',
    'OCIRepository': 'ocirepositories',
}

DEPENDENCY_OF_PREFIX = 'tf.dependency.of.'
STATUS_CONFLICT_RETRIES = 3


class KubeStoreError(ConfigError):
    """Kubernetes client could not be configured."""


def load_api_client(kubeconfig: Optional[str] = None) -> client.ApiClient:
    """Try in-cluster config first, then kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        try:
            config.load_kube_config(config_file=kubeconfig)
        except config.ConfigException as e:
            raise KubeStoreError(f"Failed to load Kubernetes config: {e}") from e
    return client.ApiClient()


def _translate(e: ApiException, what: str) -> Exception:
    if e.status == 404:
        return StoreNotFoundError(f"{what} not found")
    if e.status == 409:
        return StoreConflictError(f"{what}: {e.reason}")
    return e


def split_finalizers(finalizers: list) -> tuple[list, list]:
    """Separate dependency markers from ordinary finalizers.

    Returns:
        (finalizers, depended_by) with markers as "namespace/name"
    """
    plain, dependents = [], []
    for finalizer in finalizers or []:
        if finalizer.startswith(DEPENDENCY_OF_PREFIX):
            dependents.append(finalizer[len(DEPENDENCY_OF_PREFIX):])
        else:
            plain.append(finalizer)
    return plain, dependents


def join_finalizers(finalizers: list, depended_by: list) -> list:
    return list(finalizers) + [DEPENDENCY_OF_PREFIX + d for d in depended_by]


class KubeResourceStore:
    """ResourceStore over the Kubernetes API."""

    def __init__(self, api_client: Optional[client.ApiClient] = None, kubeconfig: Optional[str] = None,
                 field_manager: str = 'tf-controller'):
        self.api_client = api_client or load_api_client(kubeconfig)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.core = client.CoreV1Api(self.api_client)
        self.field_manager = field_manager

    def _to_resource(self, obj: dict) -> ManagedResource:
        metadata = obj.setdefault('metadata', {})
        metadata['finalizers'], metadata['dependedBy'] = split_finalizers(metadata.get('finalizers'))
        return ManagedResource.from_dict(obj)

    def _get_raw(self, key: ObjectKey) -> dict:
        try:
            return self.custom.get_namespaced_custom_object(GROUP, VERSION, key.namespace, PLURAL, key.name)
        except ApiException as e:
            raise _translate(e, str(key)) from e

    def _patch(self, key: ObjectKey, body: dict) -> None:
        try:
            self.custom.patch_namespaced_custom_object(
                GROUP, VERSION, key.namespace, PLURAL, key.name, body,
                field_manager=self.field_manager,
            )
        except ApiException as e:
            raise _translate(e, str(key)) from e

    def get(self, key: ObjectKey) -> ManagedResource:
        return self._to_resource(self._get_raw(key))

    def list(self) -> list[ManagedResource]:
        result = self.custom.list_cluster_custom_object(GROUP, VERSION, PLURAL)
        return [self._to_resource(item) for item in result.get('items', [])]

    def update(self, resource: ManagedResource) -> None:
        """Patch spec and finalizers, keeping dependency markers as stored."""
        raw = self._get_raw(resource.key)
        _, depended_by = split_finalizers(raw.get('metadata', {}).get('finalizers'))
        self._patch(resource.key, {
            'metadata': {
                'finalizers': join_finalizers(resource.metadata.finalizers, depended_by),
                'annotations': resource.metadata.annotations or None,
                'resourceVersion': raw['metadata'].get('resourceVersion'),
            },
            'spec': resource.spec.to_dict(),
        })

    def patch_status(self, key: ObjectKey, status: ResourceStatus) -> None:
        """Replace the status subresource wholesale.

        Fields the new status leaves out are cleared, which a merge patch
        would not do. Conflicts are retried against a fresh read.
        """
        for attempt in range(1, STATUS_CONFLICT_RETRIES + 1):
            raw = self._get_raw(key)
            raw['status'] = status.to_dict()
            try:
                self.custom.replace_namespaced_custom_object_status(
                    GROUP, VERSION, key.namespace, PLURAL, key.name, raw,
                    field_manager=self.field_manager,
                )
                return
            except ApiException as e:
                if e.status == 409 and attempt < STATUS_CONFLICT_RETRIES:
                    logger.debug(f"[{key}] status update conflict, retrying ({attempt}/{STATUS_CONFLICT_RETRIES})")
                    continue
                raise _translate(e, str(key)) from e

    def delete(self, key: ObjectKey) -> None:
        try:
            self.custom.delete_namespaced_custom_object(GROUP, VERSION, key.namespace, PLURAL, key.name)
        except ApiException as e:
            raise _translate(e, str(key)) from e

    def _edit_markers(self, key: ObjectKey, dependent: ObjectKey, add: bool) -> None:
        raw = self._get_raw(key)
        finalizers = list(raw.get('metadata', {}).get('finalizers') or [])
        marker = DEPENDENCY_OF_PREFIX + str(dependent)
        if add == (marker in finalizers):
            return
        if add:
            finalizers.append(marker)
        else:
            finalizers.remove(marker)
        self._patch(key, {
            'metadata': {
                'finalizers': finalizers,
                'resourceVersion': raw['metadata'].get('resourceVersion'),
            },
        })

    def add_depended_by(self, key: ObjectKey, dependent: ObjectKey) -> None:
        self._edit_markers(key, dependent, add=True)

    def remove_depended_by(self, key: ObjectKey, dependent: ObjectKey) -> None:
        self._edit_markers(key, dependent, add=False)

    def get_source(self, kind: str, key: ObjectKey) -> SourceObject:
        plural = SOURCE_PLURALS.get(kind)
        if plural is None:
            raise StoreNotFoundError(f"unsupported source kind {kind}")
        try:
            obj = self.custom.get_namespaced_custom_object(
                SOURCE_GROUP, SOURCE_VERSION, key.namespace, plural, key.name
            )
        except ApiException as e:
            raise _translate(e, f"{kind} {key}") from e
        artifact = (obj.get('status') or {}).get('artifact')
        if not artifact:
            return SourceObject(kind=kind, key=key, artifact=None)
        return SourceObject(kind=kind, key=key, artifact=SourceArtifact(
            revision=artifact.get('revision', ''),
            url=artifact.get('url', ''),
            digest=artifact.get('digest', ''),
        ))

    def _read_secret(self, key: ObjectKey):
        try:
            return self.core.read_namespaced_secret(key.name, key.namespace)
        except ApiException as e:
            raise _translate(e, f"secret {key}") from e

    def get_secret(self, key: ObjectKey) -> dict[str, bytes]:
        secret = self._read_secret(key)
        return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}

    def get_secret_annotations(self, key: ObjectKey) -> dict[str, str]:
        metadata = self._read_secret(key).metadata
        return dict((metadata and metadata.annotations) or {})

    def get_config_map(self, key: ObjectKey) -> dict[str, str]:
        try:
            cm = self.core.read_namespaced_config_map(key.name, key.namespace)
        except ApiException as e:
            raise _translate(e, f"configmap {key}") from e
        return dict(cm.data or {})

    def record_event(self, resource: ManagedResource, event_type: str, reason: str, message: str,
                     annotations: Optional[dict] = None) -> None:
        now = format_time(utc_now())
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f'{resource.name}.',
                namespace=resource.namespace,
                annotations=annotations or None,
            ),
            involved_object=client.V1ObjectReference(
                api_version=API_VERSION,
                kind='Terraform',
                name=resource.name,
                namespace=resource.namespace,
                uid=resource.metadata.uid or None,
            ),
            type=event_type,
            reason=reason,
            message=message,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=self.field_manager),
        )
        try:
            self.core.create_namespaced_event(resource.namespace, body)
        except ApiException as e:
            # Events are best effort
            logger.warning(f"[{resource.key}] Failed to record event {reason}: {e.reason}")

    def watch(self, on_change: Callable[[ObjectKey], None], stop: threading.Event) -> None:
        """Stream object changes into on_change until stop is set."""
        w = k8s_watch.Watch()
        while not stop.is_set():
            try:
                for event in w.stream(self.custom.list_cluster_custom_object, GROUP, VERSION, PLURAL,
                                      timeout_seconds=300):
                    metadata = event['object'].get('metadata', {})
                    on_change(ObjectKey(metadata.get('namespace', 'default'), metadata['name']))
                    if stop.is_set():
                        break
            except ApiException as e:
                logger.error(f"Watch error: {e.reason}")
                time.sleep(5)
        w.stop()
