"""Object store used by the reconciler.

ResourceStore is the cluster seen by the reconciler: managed resources,
their sources, secrets, config maps and events. InMemoryStore keeps
everything in dicts and models the deletion rules of the cluster:
deleting an object that still carries finalizers or dependents only
marks it, and it vanishes once the last of them is removed.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional, Protocol, runtime_checkable

from api.types import ManagedResource, ObjectKey, ResourceStatus
from common import utc_now

logger = logging.getLogger(__name__)

EVENT_NORMAL = 'Normal'
EVENT_WARNING = 'Warning'


class StoreNotFoundError(Exception):
    """Object does not exist."""


class StoreConflictError(Exception):
    """Object changed underneath the writer."""


@dataclass
class SourceArtifact:
    """Packaged configuration at one revision.

    Either content is inline (local sources) or url points at a tar.gz.
    """
    revision: str
    url: str = ''
    digest: str = ''
    content: Optional[bytes] = None


@dataclass
class SourceObject:
    kind: str
    key: ObjectKey
    artifact: Optional[SourceArtifact] = None


@dataclass
class RecordedEvent:
    key: ObjectKey
    type: str
    reason: str
    message: str
    annotations: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


@runtime_checkable
class ResourceStore(Protocol):
    def get(self, key: ObjectKey) -> ManagedResource: ...

    def list(self) -> list[ManagedResource]: ...

    def update(self, resource: ManagedResource) -> None: ...

    def patch_status(self, key: ObjectKey, status: ResourceStatus) -> None: ...

    def delete(self, key: ObjectKey) -> None: ...

    def add_depended_by(self, key: ObjectKey, dependent: ObjectKey) -> None: ...

    def remove_depended_by(self, key: ObjectKey, dependent: ObjectKey) -> None: ...

    def get_source(self, kind: str, key: ObjectKey) -> SourceObject: ...

    def get_secret(self, key: ObjectKey) -> dict[str, bytes]: ...

    def get_secret_annotations(self, key: ObjectKey) -> dict[str, str]: ...

    def get_config_map(self, key: ObjectKey) -> dict[str, str]: ...

    def record_event(self, resource: ManagedResource, event_type: str, reason: str, message: str,
                     annotations: Optional[dict] = None) -> None: ...


class InMemoryStore:
    """Thread-safe dict-backed ResourceStore.

    Subclasses persist by overriding the _read/_write/_remove/_keys
    primitives; the deletion and generation rules live here.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._resources: dict[ObjectKey, dict] = {}
        self._sources: dict[tuple, SourceObject] = {}
        self._secrets: dict[ObjectKey, dict[str, bytes]] = {}
        self._secret_annotations: dict[ObjectKey, dict[str, str]] = {}
        self._config_maps: dict[ObjectKey, dict[str, str]] = {}
        self.events: list[RecordedEvent] = []

    # Storage primitives

    def _read(self, key: ObjectKey) -> Optional[dict]:
        return copy.deepcopy(self._resources.get(key))

    def _write(self, key: ObjectKey, data: dict) -> None:
        self._resources[key] = copy.deepcopy(data)

    def _remove(self, key: ObjectKey) -> None:
        self._resources.pop(key, None)

    def _keys(self) -> Iterator[ObjectKey]:
        return iter(sorted(self._resources))

    def _load(self, key: ObjectKey) -> ManagedResource:
        data = self._read(key)
        if data is None:
            raise StoreNotFoundError(f"{key} not found")
        return ManagedResource.from_dict(data)

    def _store(self, resource: ManagedResource) -> None:
        """Write, or drop the object once deletion has nothing left to wait for."""
        meta = resource.metadata
        if meta.deletion_timestamp is not None and not meta.finalizers and not meta.depended_by:
            logger.debug(f"[{resource.key}] removed")
            self._remove(resource.key)
            return
        self._write(resource.key, resource.to_dict())

    # Seeding

    def put(self, resource: ManagedResource) -> None:
        """Create or replace an object as-is."""
        with self._lock:
            if not resource.metadata.uid:
                resource.metadata.uid = f'{resource.namespace}-{resource.name}'
            self._write(resource.key, resource.to_dict())

    def put_source(self, kind: str, key: ObjectKey, artifact: Optional[SourceArtifact]) -> None:
        with self._lock:
            self._sources[(kind, key)] = SourceObject(kind=kind, key=key, artifact=artifact)

    def put_secret(self, key: ObjectKey, data: dict[str, bytes], annotations: Optional[dict] = None) -> None:
        with self._lock:
            self._secrets[key] = dict(data)
            self._secret_annotations[key] = dict(annotations or {})

    def put_config_map(self, key: ObjectKey, data: dict[str, str]) -> None:
        with self._lock:
            self._config_maps[key] = dict(data)

    # ResourceStore

    def get(self, key: ObjectKey) -> ManagedResource:
        with self._lock:
            return self._load(key)

    def list(self) -> list[ManagedResource]:
        with self._lock:
            return [self._load(key) for key in list(self._keys())]

    def update(self, resource: ManagedResource) -> None:
        """Write metadata and spec; status is left as stored."""
        with self._lock:
            current = self._load(resource.key)
            if current.spec.to_dict() != resource.spec.to_dict():
                resource.metadata.generation = current.generation + 1
            else:
                resource.metadata.generation = current.generation
            resource.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            resource.metadata.depended_by = list(current.metadata.depended_by)
            updated = copy.deepcopy(resource)
            updated.status = current.status
            self._store(updated)

    def patch_status(self, key: ObjectKey, status: ResourceStatus) -> None:
        with self._lock:
            current = self._load(key)
            current.status = copy.deepcopy(status)
            self._write(key, current.to_dict())

    def delete(self, key: ObjectKey) -> None:
        with self._lock:
            current = self._load(key)
            if current.metadata.deletion_timestamp is None:
                current.metadata.deletion_timestamp = utc_now()
            self._store(current)

    def add_depended_by(self, key: ObjectKey, dependent: ObjectKey) -> None:
        with self._lock:
            current = self._load(key)
            marker = str(dependent)
            if marker not in current.metadata.depended_by:
                current.metadata.depended_by.append(marker)
                self._store(current)

    def remove_depended_by(self, key: ObjectKey, dependent: ObjectKey) -> None:
        with self._lock:
            current = self._load(key)
            marker = str(dependent)
            if marker in current.metadata.depended_by:
                current.metadata.depended_by.remove(marker)
                self._store(current)

    def get_source(self, kind: str, key: ObjectKey) -> SourceObject:
        with self._lock:
            source = self._sources.get((kind, key))
            if source is None:
                raise StoreNotFoundError(f"{kind} {key} not found")
            return copy.deepcopy(source)

    def get_secret(self, key: ObjectKey) -> dict[str, bytes]:
        with self._lock:
            if key not in self._secrets:
                raise StoreNotFoundError(f"secret {key} not found")
            return dict(self._secrets[key])

    def get_secret_annotations(self, key: ObjectKey) -> dict[str, str]:
        with self._lock:
            if key not in self._secrets:
                raise StoreNotFoundError(f"secret {key} not found")
            return dict(self._secret_annotations.get(key, {}))

    def get_config_map(self, key: ObjectKey) -> dict[str, str]:
        with self._lock:
            if key not in self._config_maps:
                raise StoreNotFoundError(f"configmap {key} not found")
            return dict(self._config_maps[key])

    def record_event(self, resource: ManagedResource, event_type: str, reason: str, message: str,
                     annotations: Optional[dict] = None) -> None:
        with self._lock:
            self.events.append(RecordedEvent(
                key=resource.key,
                type=event_type,
                reason=reason,
                message=message,
                annotations=dict(annotations or {}),
            ))
