"""Output extraction and the optional output secret."""

import json
import logging

from api import conditions as c
from api import status
from api.types import ManagedResource, ObjectKey
from cluster.events import SEVERITY_INFO
from cluster.store import StoreNotFoundError
from engine.client import OutputMeta, WriteOutputsRequest
from engine.errors import EngineError
from reconciler.context import PassContext
from reconciler.errors import OutputsError
from reconciler.setup import Workspace

logger = logging.getLogger(__name__)

OUTPUT_TYPE_STRING = 'string'
OUTPUT_TYPE_NUMBER = 'number'
OUTPUT_TYPE_BOOL = 'bool'


def encode_output(meta: OutputMeta) -> bytes:
    """Render one output value as secret data.

    Strings are stored raw; everything else as its JSON text.
    """
    if meta.type == OUTPUT_TYPE_STRING and isinstance(meta.value, str):
        return meta.value.encode('utf-8')
    return json.dumps(meta.value, separators=(',', ':')).encode('utf-8')


def select_outputs(resource: ManagedResource, outputs: dict[str, OutputMeta]) -> dict[str, bytes]:
    """Pick the outputs to write, applying `name:alias` mappings."""
    wots = resource.spec.write_outputs_to_secret
    if not wots.outputs:
        return {name: encode_output(meta) for name, meta in outputs.items()}

    data = {}
    for mapping in wots.outputs:
        output, _, mapped_to = mapping.partition(':')
        if not mapped_to:
            mapped_to = output
        if output not in outputs:
            logger.error(f"[{resource.key}] output not found: {output}")
            continue
        data[mapped_to] = encode_output(outputs[output])
    return data


def outputs_may_be_drifted(ctx: PassContext, resource: ManagedResource) -> bool:
    """True when outputs should be written but their secret is gone."""
    wots = resource.spec.write_outputs_to_secret
    if wots is None:
        return False
    try:
        ctx.store.get_secret(ObjectKey(resource.namespace, wots.name))
    except StoreNotFoundError:
        return True
    return False


def write_outputs(ctx: PassContext, resource: ManagedResource, outputs: dict[str, OutputMeta]) -> None:
    revision = ctx.revision
    wots = resource.spec.write_outputs_to_secret
    data = select_outputs(resource, outputs)

    if not data or resource.spec.destroy:
        status.outputs_written(resource, revision, 'No Outputs written')
        return

    request = WriteOutputsRequest(
        namespace=resource.namespace,
        name=resource.name,
        secret_name=wots.name,
        uid=resource.metadata.uid,
        outputs=data,
        labels=dict(wots.labels),
        annotations=dict(wots.annotations),
    )
    try:
        reply = ctx.engine.write_outputs(request)
    except EngineError as e:
        status.not_ready(resource, revision, c.OUTPUTS_WRITING_FAILED, str(e))
        raise OutputsError(str(e)) from e
    logger.info(f"[{resource.key}] write outputs: {reply.message}, changed: {reply.changed}")

    if reply.changed:
        keys = list(data)
        ctx.event(resource, SEVERITY_INFO, f'Outputs written.\n{len(keys)} output(s): {", ".join(keys)}')
    status.outputs_written(resource, revision, 'Outputs written')


def process_outputs(ctx: PassContext, resource: ManagedResource, workspace: Workspace) -> None:
    """Read outputs, record their names and write the output secret if asked.

    Raises:
        OutputsError: Outputs could not be read or written
    """
    revision = ctx.revision
    try:
        outputs = ctx.engine.output(workspace.instance)
    except EngineError as e:
        message = f'error running Output: {e}'
        status.not_ready(resource, revision, c.OUTPUT_FAILED, message)
        ctx.patch_status(resource)
        raise OutputsError(message) from e

    if outputs:
        status.outputs_available(resource, sorted(outputs), 'Outputs available')

    try:
        if resource.spec.write_outputs_to_secret is not None and outputs:
            write_outputs(ctx, resource, outputs)
    finally:
        ctx.patch_status(resource)
