#!/usr/bin/env python3
"""CLI entry point for infra-reconciler.

Verbs:
- run: Start the manager and reconcile until stopped
- reconcile: Request and run one pass for a resource
- approve / replan / force-unlock: Operator directives
- show-plan / get: Inspect resources
- apply / delete: Load or remove objects in file and memory stores
"""

import argparse
import base64
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional

import yaml

from api import conditions as c
from api.status import set_readiness
from api.types import (
    FORCE_UNLOCK_AUTO,
    FORCE_UNLOCK_YES,
    KIND,
    RECONCILE_REQUEST_ANNOTATION,
    ManagedResource,
    ObjectKey,
    TFStateSpec,
)
from cluster.file_store import FileStore
from cluster.store import InMemoryStore, ResourceStore, SourceArtifact, StoreNotFoundError
from common import configure_logging, format_time, utc_now
from config import ConfigError, ControllerConfig, load_config
from engine.http import HttpEngineClient
from manager import Manager
from reconciler.core import SOURCE_KINDS, Reconciler
from reconciler.encoding import PLAN_SECRET_KEY, decode_plan, plan_secret_name
from reconciler.errors import PlanEncodingError, ReconcileError

logger = logging.getLogger(__name__)

VERBS = {
    "run": "Start the reconcile manager",
    "reconcile": "Request and run one reconcile pass",
    "approve": "Approve the pending plan",
    "replan": "Discard the pending plan and plan again",
    "force-unlock": "Force-unlock the remote state",
    "show-plan": "Print the pending plan",
    "get": "Show resource status",
    "apply": "Load objects from a YAML file",
    "delete": "Mark a resource for deletion",
}

# Passes run by `reconcile` while the reconciler asks for an immediate requeue
MAX_IMMEDIATE_PASSES = 3


def get_version() -> str:
    try:
        return version('infra-reconciler')
    except PackageNotFoundError:
        return 'dev'


def print_usage():
    """Print top-level usage listing the verbs."""
    print(f"infra-reconciler {get_version()}")
    print()
    print("Usage: reconciler <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERBS.items():
        print(f"  {verb:<14} {desc}")
    print()
    print("Run 'reconciler <verb> --help' for verb-specific options.")
    print()
    print("Examples:")
    print("  reconciler run --store kubernetes")
    print("  reconciler apply -f stack.yaml --store file")
    print("  reconciler approve my-stack -n flux-system")
    print("  reconciler force-unlock my-stack --lock-id f2ab685b-f84d-ac0b-a125-378a22877e8d")


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'reconciler {verb}',
        description=VERBS[verb],
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Controller config file (default: $RECONCILER_CONFIG)',
    )
    parser.add_argument(
        '--store',
        choices=['kubernetes', 'file', 'memory'],
        help='Object store (overrides config)',
    )
    parser.add_argument(
        '--state-dir',
        type=Path,
        help='Directory for the file store (overrides config)',
    )
    parser.add_argument(
        '--namespace', '-n',
        default='default',
        help='Namespace of the resource (default: default)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    return parser


def _named_parser(verb: str) -> argparse.ArgumentParser:
    parser = _common_parser(verb)
    parser.add_argument('name', help='Resource name, or namespace/name')
    return parser


def _load(args) -> ControllerConfig:
    config = load_config(args.config)
    if args.store:
        config.store = args.store
    if args.state_dir:
        config.state_dir = args.state_dir
    config.validate()
    return config


def build_store(config: ControllerConfig) -> ResourceStore:
    if config.store == 'file':
        return FileStore(config.state_dir)
    if config.store == 'memory':
        return InMemoryStore()
    from cluster.kube import KubeResourceStore
    kubeconfig = str(config.kubeconfig) if config.kubeconfig else None
    return KubeResourceStore(kubeconfig=kubeconfig, field_manager=config.field_manager)


def build_engine(config: ControllerConfig) -> HttpEngineClient:
    return HttpEngineClient(
        config.engine_url,
        timeout=config.engine_timeout,
        ca_cert=config.engine_ca_cert,
        insecure=config.engine_insecure,
    )


def build_reconciler(config: ControllerConfig, store: ResourceStore) -> Reconciler:
    return Reconciler(store, build_engine(config), config)


def _key(args) -> ObjectKey:
    return ObjectKey.parse(args.name, args.namespace)


def _setup(args) -> tuple[ControllerConfig, ResourceStore]:
    configure_logging(args.verbose)
    config = _load(args)
    return config, build_store(config)


def request_reconcile(store: ResourceStore, key: ObjectKey) -> str:
    """Stamp the reconcile-request annotation and return its token."""
    resource = store.get(key)
    token = format_time(utc_now())
    resource.metadata.annotations[RECONCILE_REQUEST_ANNOTATION] = token
    store.update(resource)
    return token


def _ready_line(resource: ManagedResource) -> str:
    ready = resource.status.conditions.get(c.READY)
    if ready is None:
        return f"{resource.key}: Ready=Unknown"
    return f"{resource.key}: Ready={ready.status} {ready.reason}: {ready.message}"


# Loading objects from YAML

def _read_documents(path: Path) -> list[dict]:
    try:
        with open(path, encoding='utf-8') as f:
            return [doc for doc in yaml.safe_load_all(f) if doc]
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def _source_artifact(doc: dict, base_dir: Path) -> Optional[SourceArtifact]:
    artifact = (doc.get('status') or {}).get('artifact')
    if not artifact:
        return None
    content = None
    if local := artifact.get('path'):
        local_path = Path(local)
        if not local_path.is_absolute():
            local_path = base_dir / local_path
        content = local_path.read_bytes()
    return SourceArtifact(
        revision=artifact.get('revision', ''),
        url=artifact.get('url', ''),
        digest=artifact.get('digest', ''),
        content=content,
    )


def _secret_data(doc: dict) -> dict[str, bytes]:
    data = {k: base64.b64decode(v) for k, v in (doc.get('data') or {}).items()}
    data.update({k: str(v).encode('utf-8') for k, v in (doc.get('stringData') or {}).items()})
    return data


def load_documents(store: ResourceStore, path: Path, default_namespace: str = 'default') -> int:
    """Write every document in a YAML file to a store that accepts seeding.

    Returns:
        Number of objects written

    Raises:
        ConfigError: Unknown kind or a store without seeding support
    """
    if not hasattr(store, 'put'):
        raise ConfigError("This store is managed by the cluster; use kubectl to apply objects")

    count = 0
    for doc in _read_documents(path):
        kind = doc.get('kind', '')
        metadata = doc.setdefault('metadata', {})
        metadata.setdefault('namespace', default_namespace)
        key = ObjectKey(metadata['namespace'], metadata.get('name', ''))
        if not key.name:
            raise ConfigError(f"{kind or 'object'} in {path} has no metadata.name")

        if kind == KIND:
            resource = ManagedResource.from_dict(doc)
            try:
                current = store.get(key)
            except StoreNotFoundError:
                store.put(resource)
            else:
                resource.metadata.finalizers = current.metadata.finalizers
                store.update(resource)
        elif kind in SOURCE_KINDS:
            store.put_source(kind, key, _source_artifact(doc, path.parent))
        elif kind == 'Secret':
            store.put_secret(key, _secret_data(doc), metadata.get('annotations'))
        elif kind == 'ConfigMap':
            store.put_config_map(key, {k: str(v) for k, v in (doc.get('data') or {}).items()})
        else:
            raise ConfigError(f"Unsupported kind '{kind}' in {path}")
        logger.info(f"[{key}] {kind} applied")
        count += 1
    return count


# Verb handlers

def run_main(argv: list) -> int:
    parser = _common_parser('run')
    parser.add_argument(
        '--filename', '-f',
        type=Path,
        action='append',
        default=[],
        help='YAML file to load before starting (repeatable)',
    )
    args = parser.parse_args(argv)
    try:
        config, store = _setup(args)
        for path in args.filename:
            load_documents(store, path, args.namespace)
    except (ConfigError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    Manager(build_reconciler(config, store), store, config).run()
    return 0


def reconcile_main(argv: list) -> int:
    parser = _named_parser('reconcile')
    parser.add_argument(
        '--request-only',
        action='store_true',
        help='Only set the request annotation; leave the pass to a running manager',
    )
    args = parser.parse_args(argv)
    try:
        config, store = _setup(args)
        key = _key(args)
        token = request_reconcile(store, key)
    except (ConfigError, StoreNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    logger.info(f"[{key}] Reconcile requested at {token}")
    if args.request_only:
        return 0

    reconciler = build_reconciler(config, store)
    try:
        for _ in range(MAX_IMMEDIATE_PASSES):
            result = reconciler.reconcile_object(key)
            if not result.requeue:
                break
    except ReconcileError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        resource = store.get(key)
    except StoreNotFoundError:
        print(f"{key}: deleted")
        return 0
    print(_ready_line(resource))
    ready = resource.status.conditions.get(c.READY)
    return 1 if ready is not None and ready.status == c.FALSE else 0


def approve_main(argv: list) -> int:
    parser = _named_parser('approve')
    parser.add_argument('--plan', help='Plan id to approve (default: the pending plan)')
    args = parser.parse_args(argv)
    try:
        _, store = _setup(args)
        resource = store.get(_key(args))
    except (ConfigError, StoreNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    pending = resource.status.plan.pending
    if not pending:
        print(f"Error: no plan pending for {resource.key}", file=sys.stderr)
        return 1
    if args.plan and args.plan != pending:
        print(f"Error: plan {args.plan} is not the pending plan ({pending})", file=sys.stderr)
        return 1

    resource.spec.approve_plan = pending
    store.update(resource)
    print(f"Plan {pending} approved for {resource.key}")
    return 0


def replan_main(argv: list) -> int:
    args = _named_parser('replan').parse_args(argv)
    try:
        _, store = _setup(args)
        key = _key(args)
        resource = store.get(key)
        status = resource.status
        status.plan.pending = ''
        status.last_planned_revision = ''
        status.last_attempted_revision = ''
        set_readiness(resource, c.FALSE, 'ReplanRequested', 'Replan requested')
        store.patch_status(key, status)
        request_reconcile(store, key)
    except (ConfigError, StoreNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Replan requested for {key}")
    return 0


def force_unlock_main(argv: list) -> int:
    parser = _named_parser('force-unlock')
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('--lock-id', help='Lock identifier reported in the StateLocked condition')
    group.add_argument('--auto', action='store_true', help='Unlock whatever lock is reported')
    args = parser.parse_args(argv)
    try:
        _, store = _setup(args)
        key = _key(args)
        resource = store.get(key)
        tfstate = resource.spec.tfstate or TFStateSpec()
        if args.auto:
            tfstate.force_unlock = FORCE_UNLOCK_AUTO
            tfstate.lock_identifier = ''
        else:
            tfstate.force_unlock = FORCE_UNLOCK_YES
            tfstate.lock_identifier = args.lock_id
        resource.spec.tfstate = tfstate
        store.update(resource)
        request_reconcile(store, key)
    except (ConfigError, StoreNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Force-unlock requested for {key}")
    return 0


def show_plan_main(argv: list) -> int:
    args = _named_parser('show-plan').parse_args(argv)
    try:
        _, store = _setup(args)
        resource = store.get(_key(args))
    except (ConfigError, StoreNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    pending = resource.status.plan.pending
    if not pending:
        print("There is no plan pending.")
        return 0

    secret_key = ObjectKey(resource.namespace, plan_secret_name(resource))
    try:
        payload = store.get_secret(secret_key).get(PLAN_SECRET_KEY)
        if payload is None:
            raise StoreNotFoundError(f"secret {secret_key} has no {PLAN_SECRET_KEY} key")
        plan = decode_plan(store.get_secret_annotations(secret_key), payload)
    except (StoreNotFoundError, PlanEncodingError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Plan {pending} for {resource.key}:")
    try:
        print(plan.decode('utf-8'))
    except UnicodeDecodeError:
        print(f"(binary plan file, {len(plan)} bytes)")
    return 0


def get_main(argv: list) -> int:
    parser = _common_parser('get')
    parser.add_argument('name', nargs='?', help='Resource name (default: all resources)')
    args = parser.parse_args(argv)
    try:
        _, store = _setup(args)
        resources = [store.get(_key(args))] if args.name else store.list()
    except (ConfigError, StoreNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"{'NAME':<40} {'READY':<8} {'PENDING PLAN':<28} MESSAGE")
    for resource in resources:
        ready = resource.status.conditions.get(c.READY)
        print(f"{str(resource.key):<40} {ready.status if ready else '-':<8} "
              f"{resource.status.plan.pending or '-':<28} {ready.message if ready else ''}")
    return 0


def apply_main(argv: list) -> int:
    parser = _common_parser('apply')
    parser.add_argument('--filename', '-f', type=Path, required=True, help='YAML file of objects')
    args = parser.parse_args(argv)
    try:
        _, store = _setup(args)
        count = load_documents(store, args.filename, args.namespace)
    except (ConfigError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"{count} object(s) applied")
    return 0


def delete_main(argv: list) -> int:
    args = _named_parser('delete').parse_args(argv)
    try:
        _, store = _setup(args)
        key = _key(args)
        store.delete(key)
    except (ConfigError, StoreNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"{key} marked for deletion")
    return 0


HANDLERS = {
    "run": run_main,
    "reconcile": reconcile_main,
    "approve": approve_main,
    "replan": replan_main,
    "force-unlock": force_unlock_main,
    "show-plan": show_plan_main,
    "get": get_main,
    "apply": apply_main,
    "delete": delete_main,
}


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to the verb handler."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print_usage()
        return 0

    verb = argv[0]
    if verb in ('-h', '--help'):
        print_usage()
        return 0
    if verb == '--version':
        print(f"infra-reconciler {get_version()}")
        return 0

    handler = HANDLERS.get(verb)
    if handler is None:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 1
    return handler(argv[1:])


if __name__ == '__main__':
    sys.exit(main())
