"""File-backed object store for running outside a cluster.

Layout under the state directory:

    resources/{namespace}/{name}.json        managed resources (written by us)
    sources/{namespace}/{kind}/{name}.yaml   revision, url, digest or local path
    secrets/{namespace}/{name}.yaml          data: {key: base64}, or stringData: {key: value};
                                             optional metadata.annotations
    configmaps/{namespace}/{name}.yaml       data: {key: value}
    events.jsonl                             recorded events, one per line

Every read goes to disk, so CLI commands in another process see the
controller's writes and vice versa.
"""

import base64
import json
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

import yaml

from api.types import ManagedResource, ObjectKey
from cluster.store import InMemoryStore, SourceArtifact, SourceObject, StoreNotFoundError
from common import format_time, utc_now

logger = logging.getLogger(__name__)


def _parse_yaml(path: Path) -> dict:
    with open(path, encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


class FileStore(InMemoryStore):
    """ResourceStore persisted as files under state_dir."""

    def __init__(self, state_dir: Path):
        super().__init__()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _resource_path(self, key: ObjectKey) -> Path:
        return self.state_dir / 'resources' / key.namespace / f'{key.name}.json'

    def _read(self, key: ObjectKey) -> Optional[dict]:
        path = self._resource_path(key)
        if not path.exists():
            return None
        with open(path, encoding='utf-8') as f:
            return json.load(f)

    def _write(self, key: ObjectKey, data: dict) -> None:
        path = self._resource_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.json.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
        logger.debug(f"Saved {key} to {path}")

    def _remove(self, key: ObjectKey) -> None:
        path = self._resource_path(key)
        if path.exists():
            path.unlink()
            logger.debug(f"Removed {path}")

    def _keys(self) -> Iterator[ObjectKey]:
        root = self.state_dir / 'resources'
        if not root.exists():
            return iter(())
        keys = [
            ObjectKey(path.parent.name, path.stem)
            for path in root.glob('*/*.json')
        ]
        return iter(sorted(keys))

    def put_source(self, kind: str, key: ObjectKey, artifact: Optional[SourceArtifact]) -> None:
        path = self.state_dir / 'sources' / key.namespace / kind / f'{key.name}.yaml'
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {}
        if artifact is not None:
            data = {'revision': artifact.revision, 'url': artifact.url, 'digest': artifact.digest}
            if artifact.content is not None:
                tarball = path.with_suffix('.tar.gz')
                tarball.write_bytes(artifact.content)
                data['path'] = tarball.name
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False)

    def get_source(self, kind: str, key: ObjectKey) -> SourceObject:
        path = self.state_dir / 'sources' / key.namespace / kind / f'{key.name}.yaml'
        if not path.exists():
            raise StoreNotFoundError(f"{kind} {key} not found")
        data = _parse_yaml(path)
        if not data.get('revision'):
            return SourceObject(kind=kind, key=key, artifact=None)

        content = None
        if local := data.get('path'):
            local_path = Path(local)
            if not local_path.is_absolute():
                local_path = path.parent / local_path
            content = local_path.read_bytes()
        artifact = SourceArtifact(
            revision=data['revision'],
            url=data.get('url', ''),
            digest=data.get('digest', ''),
            content=content,
        )
        return SourceObject(kind=kind, key=key, artifact=artifact)

    def _secret_path(self, key: ObjectKey) -> Path:
        return self.state_dir / 'secrets' / key.namespace / f'{key.name}.yaml'

    def _read_secret(self, key: ObjectKey) -> dict:
        path = self._secret_path(key)
        if not path.exists():
            raise StoreNotFoundError(f"secret {key} not found")
        return _parse_yaml(path)

    def put_secret(self, key: ObjectKey, data: dict[str, bytes], annotations: Optional[dict] = None) -> None:
        path = self._secret_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        doc = {'data': {k: base64.b64encode(v).decode('ascii') for k, v in data.items()}}
        if annotations:
            doc['metadata'] = {'annotations': dict(annotations)}
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(doc, f)

    def get_secret(self, key: ObjectKey) -> dict[str, bytes]:
        doc = self._read_secret(key)
        data = {k: base64.b64decode(v) for k, v in (doc.get('data') or {}).items()}
        data.update({k: str(v).encode('utf-8') for k, v in (doc.get('stringData') or {}).items()})
        return data

    def get_secret_annotations(self, key: ObjectKey) -> dict[str, str]:
        metadata = self._read_secret(key).get('metadata') or {}
        return {k: str(v) for k, v in (metadata.get('annotations') or {}).items()}

    def put_config_map(self, key: ObjectKey, data: dict[str, str]) -> None:
        path = self.state_dir / 'configmaps' / key.namespace / f'{key.name}.yaml'
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump({'data': dict(data)}, f)

    def get_config_map(self, key: ObjectKey) -> dict[str, str]:
        path = self.state_dir / 'configmaps' / key.namespace / f'{key.name}.yaml'
        if not path.exists():
            raise StoreNotFoundError(f"configmap {key} not found")
        data = _parse_yaml(path).get('data') or {}
        return {k: str(v) for k, v in data.items()}

    def record_event(self, resource: ManagedResource, event_type: str, reason: str, message: str,
                     annotations: Optional[dict] = None) -> None:
        super().record_event(resource, event_type, reason, message, annotations)
        line = json.dumps({
            'time': format_time(utc_now()),
            'object': str(resource.key),
            'type': event_type,
            'reason': reason,
            'message': message,
            'annotations': annotations or {},
        })
        with self._lock:
            with open(self.state_dir / 'events.jsonl', 'a', encoding='utf-8') as f:
                f.write(line + '\n')
