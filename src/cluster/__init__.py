"""Cluster-side collaborators: object stores, events and artifacts.

KubeResourceStore lives in cluster.kube and is imported on demand so
out-of-cluster runs do not need a cluster configuration.
"""

from cluster.artifacts import ArtifactFetcher, ArtifactFetchError
from cluster.events import EventRecorder, SEVERITY_ERROR, SEVERITY_INFO
from cluster.file_store import FileStore
from cluster.store import (
    InMemoryStore,
    RecordedEvent,
    ResourceStore,
    SourceArtifact,
    SourceObject,
    StoreConflictError,
    StoreNotFoundError,
)

__all__ = [
    # Artifacts
    "ArtifactFetcher",
    "ArtifactFetchError",
    # Events
    "EventRecorder",
    "SEVERITY_ERROR",
    "SEVERITY_INFO",
    # Stores
    "FileStore",
    "InMemoryStore",
    "RecordedEvent",
    "ResourceStore",
    "SourceArtifact",
    "SourceObject",
    "StoreConflictError",
    "StoreNotFoundError",
]
