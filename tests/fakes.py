"""In-process EngineClient double.

Records every call and keeps just enough state (instances, saved plans,
output secrets) for whole reconcile passes to run against an
InMemoryStore.
"""

from api.types import ENCODING_ANNOTATION, ManagedResource, ObjectKey
from cluster.store import StoreNotFoundError
from engine.client import (
    ApplyRequest,
    FileMappingContent,
    InventoryItem,
    OutputMeta,
    PlanReply,
    PlanRequest,
    UploadReply,
    WriteOutputsReply,
    WriteOutputsRequest,
)
from reconciler.drift import DRIFT_FILENAME
from reconciler.encoding import GZIP, PLAN_SECRET_KEY, encode_plan, plan_secret_name


class FakeEngine:
    """EngineClient whose answers are set as attributes.

    Attributes:
        plan_changes: Reply for ordinary plans
        drifted: Reply for drift-detection plans
        destroy_plan_created: Whether a destroy plan finds anything
        outputs: Returned by output()
        inventory: Returned by get_inventory()
        failures: Operation name -> exception raised on every call
        break_the_glass_done: Returned by has_break_the_glass_session_done()
    """

    def __init__(self, store=None):
        self.store = store
        self.calls: list[tuple[str, tuple]] = []
        self.plan_changes = True
        self.drifted = False
        self.destroy_plan_created = True
        self.drift_output = '  ~ resource "null_resource" "a" changed'
        self.outputs: dict[str, OutputMeta] = {}
        self.inventory: list[InventoryItem] = []
        self.failures: dict[str, Exception] = {}
        self.break_the_glass_done = True
        self.instances: dict[str, dict] = {}
        self.plan_requests: list[PlanRequest] = []
        self.apply_requests: list[ApplyRequest] = []
        self._counter = 0

    def _record(self, name: str, *args):
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]

    def called(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def upload_and_extract(self, namespace: str, name: str, tar_gz: bytes, path: str) -> UploadReply:
        self._record('upload_and_extract', namespace, name, path)
        self._counter += 1
        return UploadReply(working_dir=f'/tmp/ws-{self._counter}/{path}', tmp_dir=f'/tmp/ws-{self._counter}')

    def cleanup_dir(self, tmp_dir: str) -> str:
        self._record('cleanup_dir', tmp_dir)
        return 'ok'

    def write_backend_config(self, dir_path: str, backend_config: str) -> str:
        self._record('write_backend_config', dir_path, backend_config)
        return 'ok'

    def process_cli_config(self, dir_path: str, namespace: str, name: str) -> str:
        self._record('process_cli_config', dir_path, namespace, name)
        return f'{dir_path}/.terraformrc'

    def look_path(self, file: str) -> str:
        self._record('look_path', file)
        return f'/usr/local/bin/{file}'

    def new_instance(self, working_dir: str, exec_path: str, instance_id: str, resource: dict) -> str:
        self._record('new_instance', working_dir, exec_path, instance_id)
        instance = f'instance-{instance_id}'
        self.instances[instance] = resource
        return instance

    def set_env(self, instance: str, envs: dict) -> None:
        self._record('set_env', instance, dict(envs))

    def create_file_mappings(self, working_dir: str, mappings: list[FileMappingContent]) -> None:
        self._record('create_file_mappings', working_dir, list(mappings))

    def generate_vars(self, instance: str, working_dir: str) -> str:
        self._record('generate_vars', instance, working_dir)
        return 'ok'

    def generate_templates(self, working_dir: str) -> str:
        self._record('generate_templates', working_dir)
        return 'ok'

    def init(self, instance: str, upgrade: bool, force_copy: bool) -> str:
        self._record('init', instance, upgrade, force_copy)
        return 'Terraform has been successfully initialized!'

    def select_workspace(self, instance: str) -> str:
        self._record('select_workspace', instance)
        return 'ok'

    def force_unlock(self, instance: str, lock_identifier: str) -> str:
        self._record('force_unlock', instance, lock_identifier)
        return 'unlocked'

    def plan(self, request: PlanRequest) -> PlanReply:
        self.plan_requests.append(request)
        if request.out == DRIFT_FILENAME:
            self._record('drift_plan', request.instance)
            return PlanReply(drifted=self.drifted, message='drift check')
        self._record('plan', request.instance, request.destroy)
        if request.destroy:
            created = self.destroy_plan_created
            return PlanReply(drifted=created, plan_created=created, message='destroy plan')
        return PlanReply(drifted=self.plan_changes, plan_created=True, message='plan')

    def save_plan(self, instance: str, name: str, namespace: str, uid: str, revision: str,
                  backend_disabled: bool) -> str:
        self._record('save_plan', instance, name, namespace, revision)
        if self.store is not None and instance in self.instances:
            resource = ManagedResource.from_dict(self.instances[instance])
            annotations = {ENCODING_ANNOTATION: GZIP}
            self.store.put_secret(
                ObjectKey(namespace, plan_secret_name(resource)),
                {PLAN_SECRET_KEY: encode_plan(annotations, f'Plan for {revision}'.encode('utf-8'))},
                annotations,
            )
        return 'saved'

    def load_plan(self, instance: str, name: str, namespace: str, backend_disabled: bool,
                  pending_plan: str) -> str:
        self._record('load_plan', instance, pending_plan)
        return 'loaded'

    def apply(self, request: ApplyRequest) -> str:
        self.apply_requests.append(request)
        self._record('apply', request.instance)
        return 'Apply complete!'

    def destroy(self, instance: str, targets: list) -> str:
        self._record('destroy', instance, list(targets))
        return 'Destroy complete!'

    def get_inventory(self, instance: str) -> list[InventoryItem]:
        self._record('get_inventory', instance)
        return list(self.inventory)

    def output(self, instance: str) -> dict[str, OutputMeta]:
        self._record('output', instance)
        return dict(self.outputs)

    def write_outputs(self, request: WriteOutputsRequest) -> WriteOutputsReply:
        self._record('write_outputs', request.secret_name, dict(request.outputs))
        key = ObjectKey(request.namespace, request.secret_name)
        changed = True
        if self.store is not None:
            try:
                changed = self.store.get_secret(key) != request.outputs
            except StoreNotFoundError:
                changed = True
            self.store.put_secret(key, request.outputs)
        return WriteOutputsReply(changed=changed, message='written')

    def get_outputs(self, namespace: str, secret_name: str) -> dict[str, str]:
        self._record('get_outputs', namespace, secret_name)
        if self.store is None:
            return {}
        data = self.store.get_secret(ObjectKey(namespace, secret_name))
        return {k: v.decode('utf-8') for k, v in data.items()}

    def show_plan_file_raw(self, instance: str, filename: str) -> str:
        self._record('show_plan_file_raw', instance, filename)
        return self.drift_output

    def finalize_secrets(self, namespace: str, name: str, workspace: str, has_output_secret: bool,
                         output_secret_name: str) -> str:
        self._record('finalize_secrets', namespace, name, workspace, has_output_secret, output_secret_name)
        return 'finalized'

    def start_break_the_glass_session(self, namespace: str, name: str) -> str:
        self._record('start_break_the_glass_session', namespace, name)
        return 'started'

    def has_break_the_glass_session_done(self, namespace: str, name: str) -> bool:
        self._record('has_break_the_glass_session_done', namespace, name)
        return self.break_the_glass_done
