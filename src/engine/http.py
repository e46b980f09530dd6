"""HTTP transport for the execution engine.

Every operation is a JSON POST to {base_url}/v1/{Operation}. Errors come
back as {"error": {"code": ..., "message": ..., "stateLockIdentifier": ...}}
and are translated to engine.errors types here and nowhere else.
"""

import base64
import copy
import json
import logging
import queue
import threading
from pathlib import Path
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from engine.client import (
    ApplyRequest,
    FileMappingContent,
    InterruptibleEngine,
    InventoryItem,
    OutputMeta,
    PlanReply,
    PlanRequest,
    UploadReply,
    WriteOutputsReply,
    WriteOutputsRequest,
)
from engine.errors import EngineCancelled, EngineError, EngineNotFoundError, EngineUnavailableError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = (502, 503, 504)
CANCEL_POLL_INTERVAL = 0.2

# Cleanup still runs after a pass is cancelled
UNINTERRUPTIBLE = frozenset({'CleanupDir'})


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


class HttpEngineClient(InterruptibleEngine):
    """EngineClient over HTTP(S)."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 600.0,
        ca_cert: Optional[Path] = None,
        insecure: bool = False,
        connect_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        """Initialize engine client.

        Args:
            base_url: Engine URL (e.g., https://tf-runner.flux-system:30000)
            timeout: Read timeout for a single operation in seconds
            ca_cert: CA bundle used to verify the engine certificate
            insecure: Skip TLS verification
            connect_retries: Retries for connections that never reached the engine
            session: Preconfigured session (tests)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.ca_cert = ca_cert
        self.insecure = insecure
        self.connect_retries = connect_retries
        self.cancelled: Optional[threading.Event] = None
        self._owns_session = session is None
        self.session = session if session is not None else self._build_session()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        # Only connection failures are retried: the request never reached the engine
        retry = Retry(total=self.connect_retries, connect=self.connect_retries, read=0, status=0,
                      backoff_factor=0.5, allowed_methods=None)
        adapter = HTTPAdapter(max_retries=retry)
        session.mount('http://', adapter)
        session.mount('https://', adapter)
        if self.insecure:
            session.verify = False
        elif self.ca_cert is not None:
            session.verify = str(self.ca_cert)
        return session

    def bind_cancel(self, cancelled: threading.Event) -> 'HttpEngineClient':
        """Copy of this client with its own session, interrupted by cancelled."""
        bound = copy.copy(self)
        if self._owns_session:
            bound.session = self._build_session()
        bound.cancelled = cancelled
        return bound

    def _parse_error_response(self, body: bytes) -> Tuple[str, str, Optional[str]]:
        """Parse error response from the engine.

        Returns:
            Tuple of (error_code, error_message, lock_identifier)
        """
        try:
            data = json.loads(body.decode('utf-8'))
            error = data.get('error', {})
            return (
                error.get('code', 'Unknown'),
                error.get('message', 'Unknown error'),
                error.get('stateLockIdentifier') or None,
            )
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError):
            return 'Unknown', body.decode('utf-8', errors='replace')[:200] or 'Unknown error', None

    def _post(self, operation: str, url: str, payload: dict) -> requests.Response:
        """POST and wait for the reply, giving up early when the pass is cancelled.

        Raises:
            EngineCancelled: cancelled was set while the call was in flight
        """
        if self.cancelled is None or operation in UNINTERRUPTIBLE:
            return self.session.post(url, json=payload, timeout=(10, self.timeout))

        replies: queue.Queue = queue.Queue(maxsize=1)

        def send():
            try:
                replies.put((self.session.post(url, json=payload, timeout=(10, self.timeout)), None))
            except Exception as e:
                replies.put((None, e))

        threading.Thread(target=send, name=f'engine-{operation}', daemon=True).start()
        while True:
            try:
                response, error = replies.get(timeout=CANCEL_POLL_INTERVAL)
            except queue.Empty:
                if self.cancelled.is_set():
                    logger.warning(f"{operation} interrupted, closing engine connection")
                    self.session.close()
                    raise EngineCancelled(f"{operation} interrupted")
                continue
            if error is not None:
                raise error
            return response

    def _call(self, operation: str, payload: dict) -> dict:
        url = f'{self.base_url}/v1/{operation}'
        logger.debug(f"POST {url}")
        try:
            response = self._post(operation, url, payload)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise EngineUnavailableError(f"{operation}: cannot reach engine at {self.base_url}: {e}") from e

        if response.status_code >= 400:
            code, message, lock_id = self._parse_error_response(response.content)
            if lock_id:
                raise EngineError(message, lock_identifier=lock_id, code=code)
            if response.status_code == 404:
                raise EngineNotFoundError(message)
            if response.status_code in TRANSIENT_STATUS:
                raise EngineUnavailableError(message)
            raise EngineError(message, code=code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise EngineError(f"{operation}: invalid JSON reply: {e}") from e

    def upload_and_extract(self, namespace: str, name: str, tar_gz: bytes, path: str) -> UploadReply:
        reply = self._call('UploadAndExtract', {
            'namespace': namespace,
            'name': name,
            'tarGz': _b64(tar_gz),
            'path': path,
        })
        return UploadReply(working_dir=reply.get('workingDir', ''), tmp_dir=reply.get('tmpDir', ''))

    def cleanup_dir(self, tmp_dir: str) -> str:
        return self._call('CleanupDir', {'tmpDir': tmp_dir}).get('message', '')

    def write_backend_config(self, dir_path: str, backend_config: str) -> str:
        return self._call('WriteBackendConfig', {
            'dirPath': dir_path,
            'backendConfig': _b64(backend_config.encode('utf-8')),
        }).get('message', '')

    def process_cli_config(self, dir_path: str, namespace: str, name: str) -> str:
        return self._call('ProcessCliConfig', {
            'dirPath': dir_path,
            'namespace': namespace,
            'name': name,
        }).get('filePath', '')

    def look_path(self, file: str) -> str:
        return self._call('LookPath', {'file': file}).get('execPath', '')

    def new_instance(self, working_dir: str, exec_path: str, instance_id: str, resource: dict) -> str:
        return self._call('NewTerraform', {
            'workingDir': working_dir,
            'execPath': exec_path,
            'instanceID': instance_id,
            'terraform': _b64(json.dumps(resource).encode('utf-8')),
        }).get('id', '')

    def set_env(self, instance: str, envs: dict) -> None:
        self._call('SetEnv', {'tfInstance': instance, 'envs': envs})

    def create_file_mappings(self, working_dir: str, mappings: list[FileMappingContent]) -> None:
        self._call('CreateFileMappings', {
            'workingDir': working_dir,
            'fileMappings': [
                {'content': _b64(m.content), 'location': m.location, 'path': m.path}
                for m in mappings
            ],
        })

    def generate_vars(self, instance: str, working_dir: str) -> str:
        return self._call('GenerateVarsForTF', {
            'tfInstance': instance,
            'workingDir': working_dir,
        }).get('message', '')

    def generate_templates(self, working_dir: str) -> str:
        return self._call('GenerateTemplate', {'workingDir': working_dir}).get('message', '')

    def init(self, instance: str, upgrade: bool, force_copy: bool) -> str:
        return self._call('Init', {
            'tfInstance': instance,
            'upgrade': upgrade,
            'forceCopy': force_copy,
        }).get('message', '')

    def select_workspace(self, instance: str) -> str:
        return self._call('SelectWorkspace', {'tfInstance': instance}).get('message', '')

    def force_unlock(self, instance: str, lock_identifier: str) -> str:
        return self._call('ForceUnlock', {
            'tfInstance': instance,
            'lockIdentifier': lock_identifier,
        }).get('message', '')

    def plan(self, request: PlanRequest) -> PlanReply:
        reply = self._call('Plan', {
            'tfInstance': request.instance,
            'out': request.out,
            'refresh': request.refresh,
            'targets': request.targets,
            'destroy': request.destroy,
            'lockTimeout': request.lock_timeout,
            'disableLock': request.disable_lock,
        })
        return PlanReply(
            drifted=bool(reply.get('drifted', False)),
            plan_created=bool(reply.get('planCreated', False)),
            message=reply.get('message', ''),
        )

    def save_plan(self, instance: str, name: str, namespace: str, uid: str, revision: str,
                  backend_disabled: bool) -> str:
        return self._call('SaveTFPlan', {
            'tfInstance': instance,
            'name': name,
            'namespace': namespace,
            'uuid': uid,
            'revision': revision,
            'backendCompletelyDisable': backend_disabled,
        }).get('message', '')

    def load_plan(self, instance: str, name: str, namespace: str, backend_disabled: bool,
                  pending_plan: str) -> str:
        return self._call('LoadTFPlan', {
            'tfInstance': instance,
            'name': name,
            'namespace': namespace,
            'backendCompletelyDisable': backend_disabled,
            'pendingPlan': pending_plan,
        }).get('message', '')

    def apply(self, request: ApplyRequest) -> str:
        return self._call('Apply', {
            'tfInstance': request.instance,
            'dirOrPlan': request.dir_or_plan,
            'refreshBeforeApply': request.refresh_before_apply,
            'targets': request.targets,
            'parallelism': request.parallelism,
        }).get('message', '')

    def destroy(self, instance: str, targets: list) -> str:
        return self._call('Destroy', {'tfInstance': instance, 'targets': targets}).get('message', '')

    def get_inventory(self, instance: str) -> list[InventoryItem]:
        reply = self._call('GetInventory', {'tfInstance': instance})
        return [
            InventoryItem(name=i.get('name', ''), type=i.get('type', ''), identifier=i.get('identifier', ''))
            for i in reply.get('inventories') or []
        ]

    def output(self, instance: str) -> dict[str, OutputMeta]:
        reply = self._call('Output', {'tfInstance': instance})
        outputs = {}
        for name, meta in (reply.get('outputs') or {}).items():
            outputs[name] = OutputMeta(
                sensitive=bool(meta.get('sensitive', False)),
                type=meta.get('type'),
                value=meta.get('value'),
            )
        return outputs

    def write_outputs(self, request: WriteOutputsRequest) -> WriteOutputsReply:
        reply = self._call('WriteOutputs', {
            'namespace': request.namespace,
            'name': request.name,
            'secretName': request.secret_name,
            'uuid': request.uid,
            'data': {k: _b64(v) for k, v in request.outputs.items()},
            'labels': request.labels,
            'annotations': request.annotations,
        })
        return WriteOutputsReply(changed=bool(reply.get('changed', False)), message=reply.get('message', ''))

    def get_outputs(self, namespace: str, secret_name: str) -> dict[str, str]:
        reply = self._call('GetOutputs', {'namespace': namespace, 'secretName': secret_name})
        return dict(reply.get('outputs') or {})

    def show_plan_file_raw(self, instance: str, filename: str) -> str:
        return self._call('ShowPlanFileRaw', {'tfInstance': instance, 'filename': filename}).get('rawOutput', '')

    def finalize_secrets(self, namespace: str, name: str, workspace: str, has_output_secret: bool,
                         output_secret_name: str) -> str:
        return self._call('FinalizeSecrets', {
            'namespace': namespace,
            'name': name,
            'workspace': workspace,
            'hasSpecifiedOutputSecret': has_output_secret,
            'specifiedOutputSecret': output_secret_name,
        }).get('message', '')

    def start_break_the_glass_session(self, namespace: str, name: str) -> str:
        return self._call('StartBreakTheGlassSession', {
            'namespace': namespace,
            'name': name,
        }).get('message', '')

    def has_break_the_glass_session_done(self, namespace: str, name: str) -> bool:
        reply = self._call('HasBreakTheGlassSessionDone', {'namespace': namespace, 'name': name})
        return bool(reply.get('success', False))
