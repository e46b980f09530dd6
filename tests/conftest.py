"""Shared pytest fixtures for reconciler tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from api.types import FINALIZER, ManagedResource, ObjectKey  # noqa: E402
from cluster.store import InMemoryStore, SourceArtifact  # noqa: E402
from config import ControllerConfig  # noqa: E402
from reconciler.core import Reconciler  # noqa: E402

from fakes import FakeEngine  # noqa: E402

REVISION = 'main@sha1:0123456789abcdef0123456789abcdef01234567'
PLAN_ID = 'plan-main-0123456789'


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep host configuration out of config loading."""
    for name in ('RECONCILER_CONFIG', 'RECONCILER_STATE_DIR', 'ENGINE_URL', 'KUBECONFIG',
                 'DISABLE_TF_K8S_BACKEND', 'DISABLE_TF_LOGS', 'NO_CROSS_NAMESPACE_REFS',
                 'ALLOW_BREAK_THE_GLASS'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(store):
    return FakeEngine(store)


@pytest.fixture
def config():
    return ControllerConfig(store='memory')


@pytest.fixture
def reconciler(store, engine, config):
    return Reconciler(store, engine, config)


def make_resource(name='stack', namespace='default', finalized=True, **spec) -> ManagedResource:
    """Build a resource pointing at the `repo` GitRepository.

    Keyword arguments are camelCase spec fields.
    """
    data = {
        'metadata': {'name': name, 'namespace': namespace},
        'spec': {
            'sourceRef': {'kind': 'GitRepository', 'name': 'repo'},
            'path': './infra',
            'interval': '1m',
            **spec,
        },
    }
    resource = ManagedResource.from_dict(data)
    if finalized:
        resource.metadata.finalizers.append(FINALIZER)
    return resource


def seed_source(store, revision=REVISION, namespace='default', name='repo'):
    store.put_source('GitRepository', ObjectKey(namespace, name),
                     SourceArtifact(revision=revision, content=b'tarball'))


@pytest.fixture
def seeded(store):
    """Store with a ready source; returns a function that adds resources."""
    seed_source(store)

    def add(**kwargs) -> ObjectKey:
        resource = make_resource(**kwargs)
        store.put(resource)
        return resource.key

    return add
