"""Workspace setup: unpack source, write backend, bind an engine instance.

The scratch directory created by the engine is released when the
`provisioned_workspace` block exits, whether setup or later phases fail.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from api import conditions as c
from api import status
from api.backend import backend_completely_disabled, backend_file_content
from api.types import FORCE_UNLOCK_AUTO, FORCE_UNLOCK_YES, ManagedResource, ObjectKey
from cluster.artifacts import ArtifactFetchError
from cluster.store import StoreNotFoundError
from engine.client import FileMappingContent
from engine.errors import EngineError
from reconciler.context import PassContext, lock_message
from reconciler.errors import AccessDeniedError, ArtifactError, SetupError

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Engine-side handles produced by setup."""
    instance: str = ''
    working_dir: str = ''
    tmp_dir: str = ''


def _fail(resource: ManagedResource, ctx: PassContext, reason: str, message: str, error_cls=SetupError):
    status.not_ready(resource, ctx.revision, reason, message)
    logger.error(f"[{resource.key}] {message}")
    return error_cls(message)


def resolve_env(ctx: PassContext, resource: ManagedResource) -> dict[str, str]:
    """Resolve env entries, following secret and config map references.

    Raises:
        KeyError, StoreNotFoundError: If a referenced value is missing
    """
    envs = {}
    for env in resource.spec.env:
        if env.secret_key_ref is not None:
            data = ctx.store.get_secret(ObjectKey(resource.namespace, env.secret_key_ref.name))
            envs[env.name] = data[env.secret_key_ref.key].decode('utf-8')
        elif env.config_map_key_ref is not None:
            data = ctx.store.get_config_map(ObjectKey(resource.namespace, env.config_map_key_ref.name))
            envs[env.name] = data[env.config_map_key_ref.key]
        else:
            envs[env.name] = env.value
    return envs


def setup_workspace(ctx: PassContext, resource: ManagedResource, workspace: Workspace) -> None:
    """Run every setup step, filling in workspace as handles appear.

    Raises:
        ArtifactError: Download or unpack failed
        AccessDeniedError: CLI config secret in another namespace while disallowed
        SetupError: Any other setup step failed
    """
    engine = ctx.engine
    spec = resource.spec
    backend_disabled = backend_completely_disabled(resource)

    status.progressing(resource, 'Initializing')
    ctx.patch_status(resource)

    logger.info(f"[{resource.key}] Setting up workspace for {ctx.revision}")
    try:
        tar_gz = ctx.fetcher.fetch(ctx.artifact)
        reply = engine.upload_and_extract(resource.namespace, resource.name, tar_gz, spec.path)
    except (ArtifactFetchError, EngineError) as e:
        raise _fail(resource, ctx, c.ARTIFACT_FAILED, str(e), ArtifactError) from e
    workspace.working_dir = reply.working_dir
    workspace.tmp_dir = reply.tmp_dir

    content = backend_file_content(resource, ctx.config.disable_k8s_backend)
    if content is None:
        logger.info(f"[{resource.key}] Backend completely disabled")
    else:
        try:
            engine.write_backend_config(workspace.working_dir, content)
        except EngineError as e:
            raise SetupError(f"error writing backend config: {e}") from e

    cli_config_path = ''
    if (ref := spec.cli_config_secret_ref) is not None:
        namespace = ref.namespace or resource.namespace
        if ctx.config.no_cross_namespace_refs and namespace != resource.namespace:
            message = (
                f'cannot access secret {namespace}/{ref.name}, '
                'cross-namespace references have been disabled'
            )
            raise _fail(resource, ctx, c.ACCESS_DENIED, message, AccessDeniedError)
        try:
            cli_config_path = engine.process_cli_config(workspace.working_dir, namespace, ref.name)
        except EngineError as e:
            raise _fail(resource, ctx, c.NEW_FAILED, f'error processing cli config: {e}') from e

    try:
        exec_path = engine.look_path(ctx.config.exec_name)
    except EngineError as e:
        raise _fail(resource, ctx, c.NEW_FAILED, f'cannot find Terraform binary: {e}') from e

    try:
        workspace.instance = engine.new_instance(
            workspace.working_dir, exec_path, ctx.loop_id, resource.to_dict()
        )
    except EngineError as e:
        raise _fail(resource, ctx, c.NEW_FAILED, f'error creating new Terraform instance: {e}') from e

    try:
        envs = resolve_env(ctx, resource)
    except (KeyError, StoreNotFoundError) as e:
        raise _fail(resource, ctx, c.INIT_FAILED, f'error resolving environment: {e}') from e
    if ctx.config.disable_tf_logs:
        envs['DISABLE_TF_LOGS'] = '1'
    if cli_config_path:
        envs['TF_CLI_CONFIG_FILE'] = cli_config_path
    try:
        engine.set_env(workspace.instance, envs)
    except EngineError as e:
        raise _fail(resource, ctx, c.INIT_FAILED, f'error setting env: {e}') from e

    if spec.file_mappings:
        try:
            mappings = [
                FileMappingContent(
                    content=ctx.store.get_secret(ObjectKey(resource.namespace, m.secret_ref.name))[m.secret_ref.key],
                    location=m.location,
                    path=m.path,
                )
                for m in spec.file_mappings
            ]
            engine.create_file_mappings(workspace.working_dir, mappings)
        except (KeyError, StoreNotFoundError, EngineError) as e:
            raise _fail(resource, ctx, c.INIT_FAILED, f'error creating file mappings: {e}') from e

    try:
        engine.generate_vars(workspace.instance, workspace.working_dir)
    except EngineError as e:
        raise _fail(resource, ctx, c.VARS_GENERATION_FAILED, str(e)) from e

    try:
        engine.generate_templates(workspace.working_dir)
    except EngineError as e:
        raise _fail(resource, ctx, c.TEMPLATE_GENERATION_FAILED, str(e)) from e

    try:
        message = engine.init(workspace.instance, upgrade=spec.upgrade_on_init, force_copy=not backend_disabled)
    except EngineError as e:
        if e.lock_identifier:
            status.state_locked(resource, e.lock_identifier, lock_message(e.lock_identifier))
        raise _fail(resource, ctx, c.INIT_FAILED, f'error running Init: {e}') from e
    logger.info(f"[{resource.key}] init reply: {message}")

    try:
        engine.select_workspace(workspace.instance)
    except EngineError as e:
        raise _fail(resource, ctx, c.SELECT_WORKSPACE_FAILED, str(e)) from e

    force_unlock_if_requested(ctx, resource, workspace)


def force_unlock_if_requested(ctx: PassContext, resource: ManagedResource, workspace: Workspace) -> None:
    """Release the observed lock when the operator asked for it.

    `yes` only unlocks when the directive names the pending lock exactly;
    `auto` unlocks whatever is pending.
    """
    tfstate = resource.spec.tfstate
    pending = resource.status.lock.pending
    if tfstate is None or not pending:
        return
    if tfstate.force_unlock == FORCE_UNLOCK_YES and tfstate.lock_identifier == pending:
        lock_id = pending
    elif tfstate.force_unlock == FORCE_UNLOCK_AUTO:
        lock_id = pending
    else:
        return

    try:
        ctx.engine.force_unlock(workspace.instance, lock_id)
    except EngineError as e:
        raise SetupError(f'error running ForceUnlock: {e}') from e
    logger.info(f"[{resource.key}] Force unlocked state lock {lock_id}")
    status.force_unlocked(resource, f'Terraform Force Unlock with Lock Identifier: {lock_id}')
    ctx.patch_status(resource)


@contextmanager
def provisioned_workspace(ctx: PassContext, resource: ManagedResource) -> Iterator[Workspace]:
    """Set up a workspace and release its scratch directory on exit."""
    workspace = Workspace()
    try:
        setup_workspace(ctx, resource, workspace)
        yield workspace
    finally:
        if workspace.tmp_dir:
            try:
                ctx.engine.cleanup_dir(workspace.tmp_dir)
            except EngineError as e:
                logger.warning(f"[{resource.key}] Failed to clean up {workspace.tmp_dir}: {e}")
