"""ManagedResource data model.

Dataclasses mirror the cluster object shape (camelCase on the wire,
snake_case in Python). Unknown spec keys are carried through untouched
so the snapshot handed to the execution engine stays complete.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from api.conditions import APPLY, ConditionSet, TRUE
from common import format_duration, format_time, parse_duration, parse_time

API_VERSION = 'infra.contrib.fluxcd.io/v1alpha2'
KIND = 'Terraform'

FINALIZER = 'finalizers.tf.contrib.fluxcd.io'

APPROVE_AUTO = 'auto'
APPROVE_DISABLE = 'disable'
DEFAULT_WORKSPACE = 'default'

FORCE_UNLOCK_AUTO = 'auto'
FORCE_UNLOCK_YES = 'yes'
FORCE_UNLOCK_NO = 'no'

HEALTH_CHECK_TCP = 'tcp'
HEALTH_CHECK_HTTP = 'http'
DEFAULT_HEALTH_CHECK_TIMEOUT = timedelta(seconds=20)

EXPONENTIAL_BACKOFF = 'ExponentialBackoff'
DEFAULT_INTERVAL = timedelta(minutes=1)
DEFAULT_RETRY_INTERVAL = timedelta(seconds=15)
DEFAULT_MAX_RETRY_INTERVAL = timedelta(hours=24)

BREAK_THE_GLASS_ANNOTATION = 'break-the-glass'
ENCODING_ANNOTATION = 'encoding'
RECONCILE_REQUEST_ANNOTATION = 'reconcile.fluxcd.io/requestedAt'


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespaced identity of a cluster object."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f'{self.namespace}/{self.name}'

    @classmethod
    def parse(cls, value: str, default_namespace: str = 'default') -> 'ObjectKey':
        if '/' in value:
            namespace, name = value.split('/', 1)
            return cls(namespace or default_namespace, name)
        return cls(default_namespace, value)


def _duration(data: dict, key: str) -> Optional[timedelta]:
    return parse_duration(data.get(key))


def _drop_empty(d: dict) -> dict:
    return {k: v for k, v in d.items() if v not in (None, '', [], {}, False)}


@dataclass
class SourceReference:
    kind: str = 'GitRepository'
    name: str = ''
    namespace: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'SourceReference':
        data = data or {}
        return cls(
            kind=data.get('kind', 'GitRepository'),
            name=data.get('name', ''),
            namespace=data.get('namespace', ''),
        )

    def to_dict(self) -> dict:
        return _drop_empty({'kind': self.kind, 'name': self.name, 'namespace': self.namespace})


@dataclass
class BackendConfig:
    """Cluster-native backend parameters or a custom backend block."""
    custom_configuration: str = ''
    secret_suffix: str = ''
    in_cluster_config: bool = False
    config_path: str = ''
    disable: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['BackendConfig']:
        if data is None:
            return None
        return cls(
            custom_configuration=data.get('customConfiguration', ''),
            secret_suffix=data.get('secretSuffix', ''),
            in_cluster_config=bool(data.get('inClusterConfig', False)),
            config_path=data.get('configPath', ''),
            disable=bool(data.get('disable', False)),
        )

    def to_dict(self) -> dict:
        return _drop_empty({
            'customConfiguration': self.custom_configuration,
            'secretSuffix': self.secret_suffix,
            'inClusterConfig': self.in_cluster_config,
            'configPath': self.config_path,
            'disable': self.disable,
        })


@dataclass
class CloudWorkspaces:
    name: str = ''
    tags: list = field(default_factory=list)


@dataclass
class CloudSpec:
    organization: str = ''
    workspaces: Optional[CloudWorkspaces] = None
    hostname: str = ''
    token: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['CloudSpec']:
        if data is None:
            return None
        workspaces = data.get('workspaces')
        return cls(
            organization=data.get('organization', ''),
            workspaces=CloudWorkspaces(
                name=workspaces.get('name', ''),
                tags=list(workspaces.get('tags') or []),
            ) if workspaces is not None else None,
            hostname=data.get('hostname', ''),
            token=data.get('token', ''),
        )

    def to_dict(self) -> dict:
        d = _drop_empty({
            'organization': self.organization,
            'hostname': self.hostname,
            'token': self.token,
        })
        if self.workspaces is not None:
            d['workspaces'] = _drop_empty({
                'name': self.workspaces.name,
                'tags': self.workspaces.tags,
            })
        return d


@dataclass
class KeySelector:
    name: str
    key: str


@dataclass
class EnvVar:
    name: str
    value: str = ''
    secret_key_ref: Optional[KeySelector] = None
    config_map_key_ref: Optional[KeySelector] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'EnvVar':
        value_from = data.get('valueFrom') or {}
        secret = value_from.get('secretKeyRef')
        config_map = value_from.get('configMapKeyRef')
        return cls(
            name=data['name'],
            value=data.get('value', ''),
            secret_key_ref=KeySelector(secret['name'], secret['key']) if secret else None,
            config_map_key_ref=KeySelector(config_map['name'], config_map['key']) if config_map else None,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name}
        if self.value:
            d['value'] = self.value
        value_from = {}
        if self.secret_key_ref:
            value_from['secretKeyRef'] = {'name': self.secret_key_ref.name, 'key': self.secret_key_ref.key}
        if self.config_map_key_ref:
            value_from['configMapKeyRef'] = {
                'name': self.config_map_key_ref.name,
                'key': self.config_map_key_ref.key,
            }
        if value_from:
            d['valueFrom'] = value_from
        return d


@dataclass
class FileMapping:
    """Secret key materialized as a file in the workspace or home directory."""
    secret_ref: KeySelector
    location: str = 'workspace'
    path: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'FileMapping':
        ref = data.get('secretKeyRef') or {}
        return cls(
            secret_ref=KeySelector(ref.get('name', ''), ref.get('key', '')),
            location=data.get('location', 'workspace'),
            path=data.get('path', ''),
        )

    def to_dict(self) -> dict:
        return {
            'secretKeyRef': {'name': self.secret_ref.name, 'key': self.secret_ref.key},
            'location': self.location,
            'path': self.path,
        }


@dataclass
class HealthCheck:
    name: str
    type: str
    url: str = ''
    address: str = ''
    timeout: Optional[timedelta] = None

    def get_timeout(self) -> timedelta:
        return self.timeout if self.timeout is not None else DEFAULT_HEALTH_CHECK_TIMEOUT

    @classmethod
    def from_dict(cls, data: dict) -> 'HealthCheck':
        return cls(
            name=data.get('name', ''),
            type=data.get('type', ''),
            url=data.get('url', ''),
            address=data.get('address', ''),
            timeout=_duration(data, 'timeout'),
        )

    def to_dict(self) -> dict:
        return _drop_empty({
            'name': self.name,
            'type': self.type,
            'url': self.url,
            'address': self.address,
            'timeout': format_duration(self.timeout),
        })


@dataclass
class TFStateSpec:
    """Operator directives for the remote state lock."""
    force_unlock: str = FORCE_UNLOCK_NO
    lock_identifier: str = ''
    lock_timeout: Optional[timedelta] = None
    disable_plan_lock: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['TFStateSpec']:
        if data is None:
            return None
        return cls(
            force_unlock=data.get('forceUnlock', FORCE_UNLOCK_NO),
            lock_identifier=data.get('lockIdentifier', ''),
            lock_timeout=_duration(data, 'lockTimeout'),
            disable_plan_lock=bool(data.get('disablePlanLock', False)),
        )

    def to_dict(self) -> dict:
        return _drop_empty({
            'forceUnlock': self.force_unlock,
            'lockIdentifier': self.lock_identifier,
            'lockTimeout': format_duration(self.lock_timeout),
            'disablePlanLock': self.disable_plan_lock,
        })


@dataclass
class WriteOutputsToSecret:
    name: str
    outputs: list = field(default_factory=list)
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['WriteOutputsToSecret']:
        if data is None:
            return None
        return cls(
            name=data.get('name', ''),
            outputs=list(data.get('outputs') or []),
            labels=dict(data.get('labels') or {}),
            annotations=dict(data.get('annotations') or {}),
        )

    def to_dict(self) -> dict:
        return _drop_empty({
            'name': self.name,
            'outputs': self.outputs,
            'labels': self.labels,
            'annotations': self.annotations,
        })


@dataclass
class ResourceSpec:
    """Desired state declared by the user."""
    source_ref: SourceReference = field(default_factory=SourceReference)
    path: str = ''
    interval: timedelta = DEFAULT_INTERVAL
    retry_interval: Optional[timedelta] = None
    retry_strategy: str = ''
    max_retry_interval: Optional[timedelta] = None
    remediation_retries: Optional[int] = None
    approve_plan: str = ''
    force: bool = False
    destroy: bool = False
    destroy_resources_on_deletion: bool = False
    disable_drift_detection: bool = False
    plan_only: bool = False
    suspend: bool = False
    break_the_glass: bool = False
    workspace: str = ''
    targets: list = field(default_factory=list)
    parallelism: int = 0
    refresh_before_apply: bool = False
    upgrade_on_init: bool = False
    enable_inventory: bool = False
    backend_config: Optional[BackendConfig] = None
    cloud: Optional[CloudSpec] = None
    cli_config_secret_ref: Optional[ObjectKey] = None
    tfstate: Optional[TFStateSpec] = None
    depends_on: list = field(default_factory=list)
    health_checks: list = field(default_factory=list)
    write_outputs_to_secret: Optional[WriteOutputsToSecret] = None
    env: list = field(default_factory=list)
    file_mappings: list = field(default_factory=list)
    # Keys this model does not interpret (vars, values, varsFrom, ...)
    extra: dict = field(default_factory=dict)

    _KNOWN = frozenset({
        'sourceRef', 'path', 'interval', 'retryInterval', 'retryStrategy',
        'maxRetryInterval', 'remediation', 'approvePlan', 'force', 'destroy',
        'destroyResourcesOnDeletion', 'disableDriftDetection', 'planOnly',
        'suspend', 'breakTheGlass', 'workspace', 'targets', 'parallelism',
        'refreshBeforeApply', 'upgradeOnInit', 'enableInventory',
        'backendConfig', 'cloud', 'cliConfigSecretRef', 'tfstate', 'dependsOn',
        'healthChecks', 'writeOutputsToSecret', 'runnerPodTemplate', 'fileMappings',
    })

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ResourceSpec':
        data = data or {}
        remediation = data.get('remediation')
        cli_ref = data.get('cliConfigSecretRef')
        env = ((data.get('runnerPodTemplate') or {}).get('spec') or {}).get('env') or []
        return cls(
            source_ref=SourceReference.from_dict(data.get('sourceRef')),
            path=data.get('path', ''),
            interval=_duration(data, 'interval') or DEFAULT_INTERVAL,
            retry_interval=_duration(data, 'retryInterval'),
            retry_strategy=data.get('retryStrategy', ''),
            max_retry_interval=_duration(data, 'maxRetryInterval'),
            remediation_retries=remediation.get('retries', 0) if remediation is not None else None,
            approve_plan=data.get('approvePlan', ''),
            force=bool(data.get('force', False)),
            destroy=bool(data.get('destroy', False)),
            destroy_resources_on_deletion=bool(data.get('destroyResourcesOnDeletion', False)),
            disable_drift_detection=bool(data.get('disableDriftDetection', False)),
            plan_only=bool(data.get('planOnly', False)),
            suspend=bool(data.get('suspend', False)),
            break_the_glass=bool(data.get('breakTheGlass', False)),
            workspace=data.get('workspace', ''),
            targets=list(data.get('targets') or []),
            parallelism=int(data.get('parallelism', 0)),
            refresh_before_apply=bool(data.get('refreshBeforeApply', False)),
            upgrade_on_init=bool(data.get('upgradeOnInit', False)),
            enable_inventory=bool(data.get('enableInventory', False)),
            backend_config=BackendConfig.from_dict(data.get('backendConfig')),
            cloud=CloudSpec.from_dict(data.get('cloud')),
            cli_config_secret_ref=ObjectKey(cli_ref.get('namespace', ''), cli_ref['name']) if cli_ref else None,
            tfstate=TFStateSpec.from_dict(data.get('tfstate')),
            depends_on=[ObjectKey(d.get('namespace', ''), d['name']) for d in data.get('dependsOn') or []],
            health_checks=[HealthCheck.from_dict(h) for h in data.get('healthChecks') or []],
            write_outputs_to_secret=WriteOutputsToSecret.from_dict(data.get('writeOutputsToSecret')),
            env=[EnvVar.from_dict(e) for e in env],
            file_mappings=[FileMapping.from_dict(m) for m in data.get('fileMappings') or []],
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = copy.deepcopy(self.extra)
        d.update(_drop_empty({
            'sourceRef': self.source_ref.to_dict(),
            'path': self.path,
            'interval': format_duration(self.interval),
            'retryInterval': format_duration(self.retry_interval),
            'retryStrategy': self.retry_strategy,
            'maxRetryInterval': format_duration(self.max_retry_interval),
            'approvePlan': self.approve_plan,
            'force': self.force,
            'destroy': self.destroy,
            'destroyResourcesOnDeletion': self.destroy_resources_on_deletion,
            'disableDriftDetection': self.disable_drift_detection,
            'planOnly': self.plan_only,
            'suspend': self.suspend,
            'breakTheGlass': self.break_the_glass,
            'workspace': self.workspace,
            'targets': list(self.targets),
            'parallelism': self.parallelism,
            'refreshBeforeApply': self.refresh_before_apply,
            'upgradeOnInit': self.upgrade_on_init,
            'enableInventory': self.enable_inventory,
            'healthChecks': [h.to_dict() for h in self.health_checks],
            'fileMappings': [m.to_dict() for m in self.file_mappings],
        }))
        if self.remediation_retries is not None:
            d['remediation'] = {'retries': self.remediation_retries}
        if self.backend_config is not None:
            d['backendConfig'] = self.backend_config.to_dict()
        if self.cloud is not None:
            d['cloud'] = self.cloud.to_dict()
        if self.cli_config_secret_ref is not None:
            d['cliConfigSecretRef'] = _drop_empty({
                'name': self.cli_config_secret_ref.name,
                'namespace': self.cli_config_secret_ref.namespace,
            })
        if self.tfstate is not None:
            d['tfstate'] = self.tfstate.to_dict()
        if self.depends_on:
            d['dependsOn'] = [_drop_empty({'name': k.name, 'namespace': k.namespace}) for k in self.depends_on]
        if self.write_outputs_to_secret is not None:
            d['writeOutputsToSecret'] = self.write_outputs_to_secret.to_dict()
        if self.env:
            d['runnerPodTemplate'] = {'spec': {'env': [e.to_dict() for e in self.env]}}
        return d


@dataclass
class ObjectMeta:
    name: str
    namespace: str = 'default'
    uid: str = ''
    generation: int = 1
    resource_version: str = ''
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    finalizers: list = field(default_factory=list)
    # Dependents holding this object, as "namespace/name"
    depended_by: list = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'ObjectMeta':
        return cls(
            name=data['name'],
            namespace=data.get('namespace') or 'default',
            uid=data.get('uid', ''),
            generation=int(data.get('generation', 1)),
            resource_version=str(data.get('resourceVersion', '')),
            labels=dict(data.get('labels') or {}),
            annotations=dict(data.get('annotations') or {}),
            finalizers=list(data.get('finalizers') or []),
            depended_by=list(data.get('dependedBy') or []),
            deletion_timestamp=parse_time(data.get('deletionTimestamp')),
        )

    def to_dict(self) -> dict:
        d = {'name': self.name, 'namespace': self.namespace, 'generation': self.generation}
        d.update(_drop_empty({
            'uid': self.uid,
            'resourceVersion': self.resource_version,
            'labels': self.labels,
            'annotations': self.annotations,
            'finalizers': list(self.finalizers),
            'dependedBy': list(self.depended_by),
            'deletionTimestamp': format_time(self.deletion_timestamp),
        }))
        return d


@dataclass
class PlanStatus:
    pending: str = ''
    last_applied: str = ''
    is_destroy_plan: bool = False
    is_drift_detection_plan: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'PlanStatus':
        data = data or {}
        return cls(
            pending=data.get('pending', ''),
            last_applied=data.get('lastApplied', ''),
            is_destroy_plan=bool(data.get('isDestroyPlan', False)),
            is_drift_detection_plan=bool(data.get('isDriftDetectionPlan', False)),
        )

    def to_dict(self) -> dict:
        return _drop_empty({
            'pending': self.pending,
            'lastApplied': self.last_applied,
            'isDestroyPlan': self.is_destroy_plan,
            'isDriftDetectionPlan': self.is_drift_detection_plan,
        })


@dataclass
class LockStatus:
    pending: str = ''
    last_applied: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'LockStatus':
        data = data or {}
        return cls(pending=data.get('pending', ''), last_applied=data.get('lastApplied', ''))

    def to_dict(self) -> dict:
        return _drop_empty({'pending': self.pending, 'lastApplied': self.last_applied})


@dataclass
class InventoryEntry:
    name: str
    type: str
    identifier: str

    @classmethod
    def from_dict(cls, data: dict) -> 'InventoryEntry':
        return cls(name=data.get('name', ''), type=data.get('type', ''), identifier=data.get('identifier', ''))

    def to_dict(self) -> dict:
        return {'name': self.name, 'type': self.type, 'identifier': self.identifier}


@dataclass
class ResourceStatus:
    """Observed state, written only by the reconciler."""
    observed_generation: int = 0
    conditions: ConditionSet = field(default_factory=ConditionSet)
    plan: PlanStatus = field(default_factory=PlanStatus)
    lock: LockStatus = field(default_factory=LockStatus)
    last_attempted_revision: str = ''
    last_planned_revision: str = ''
    last_applied_revision: str = ''
    last_plan_at: Optional[datetime] = None
    last_drift_detected_at: Optional[datetime] = None
    last_applied_by_drift_detection_at: Optional[datetime] = None
    available_outputs: list = field(default_factory=list)
    reconciliation_failures: int = 0
    last_handled_reconcile_at: str = ''
    # None means no inventory recorded yet; [] is a recorded empty inventory
    inventory: Optional[list] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ResourceStatus':
        data = data or {}
        inventory = data.get('inventory')
        return cls(
            observed_generation=int(data.get('observedGeneration', 0)),
            conditions=ConditionSet.from_list(data.get('conditions')),
            plan=PlanStatus.from_dict(data.get('plan')),
            lock=LockStatus.from_dict(data.get('lock')),
            last_attempted_revision=data.get('lastAttemptedRevision', ''),
            last_planned_revision=data.get('lastPlannedRevision', ''),
            last_applied_revision=data.get('lastAppliedRevision', ''),
            last_plan_at=parse_time(data.get('lastPlanAt')),
            last_drift_detected_at=parse_time(data.get('lastDriftDetectedAt')),
            last_applied_by_drift_detection_at=parse_time(data.get('lastAppliedByDriftDetectionAt')),
            available_outputs=list(data.get('availableOutputs') or []),
            reconciliation_failures=int(data.get('reconciliationFailures', 0)),
            last_handled_reconcile_at=data.get('lastHandledReconcileAt', ''),
            inventory=[InventoryEntry.from_dict(e) for e in inventory.get('entries') or []]
            if inventory is not None else None,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'observedGeneration': self.observed_generation,
            'conditions': self.conditions.to_list(),
            'plan': self.plan.to_dict(),
            'lock': self.lock.to_dict(),
        }
        d.update(_drop_empty({
            'lastAttemptedRevision': self.last_attempted_revision,
            'lastPlannedRevision': self.last_planned_revision,
            'lastAppliedRevision': self.last_applied_revision,
            'lastPlanAt': format_time(self.last_plan_at),
            'lastDriftDetectedAt': format_time(self.last_drift_detected_at),
            'lastAppliedByDriftDetectionAt': format_time(self.last_applied_by_drift_detection_at),
            'availableOutputs': list(self.available_outputs),
            'lastHandledReconcileAt': self.last_handled_reconcile_at,
        }))
        if self.reconciliation_failures:
            d['reconciliationFailures'] = self.reconciliation_failures
        if self.inventory is not None:
            d['inventory'] = {'entries': [e.to_dict() for e in self.inventory]}
        return d


@dataclass
class ManagedResource:
    """A declarative infrastructure program and its observed state."""
    metadata: ObjectMeta
    spec: ResourceSpec = field(default_factory=ResourceSpec)
    status: ResourceStatus = field(default_factory=ResourceStatus)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.metadata.namespace, self.metadata.name)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def workspace_name(self) -> str:
        return self.spec.workspace or DEFAULT_WORKSPACE

    @property
    def is_force_unlock_auto(self) -> bool:
        return self.spec.tfstate is not None and self.spec.tfstate.force_unlock == FORCE_UNLOCK_AUTO

    def get_retry_interval(self) -> timedelta:
        interval = self.spec.retry_interval or DEFAULT_RETRY_INTERVAL
        if self.spec.retry_strategy == EXPONENTIAL_BACKOFF:
            interval = interval * (2 ** self.status.reconciliation_failures)
            limit = self.spec.max_retry_interval or DEFAULT_MAX_RETRY_INTERVAL
            if interval > limit:
                return limit
        return interval

    def should_retry(self) -> bool:
        retries = self.spec.remediation_retries
        if retries is None or retries < 0:
            return True
        return self.status.reconciliation_failures < retries

    def has_drift(self) -> bool:
        """True when drift was seen after the last successful apply."""
        drift_at = self.status.last_drift_detected_at
        apply = self.status.conditions.get(APPLY)
        if drift_at is None or apply is None or apply.status != TRUE:
            return False
        return apply.last_transition_time is not None and drift_at > apply.last_transition_time

    def break_the_glass_requested(self) -> bool:
        return self.spec.break_the_glass or BREAK_THE_GLASS_ANNOTATION in self.metadata.annotations

    def reconcile_requested(self) -> str:
        """Unhandled reconcile request token, or '' when there is none."""
        token = self.metadata.annotations.get(RECONCILE_REQUEST_ANNOTATION, '')
        if token and token != self.status.last_handled_reconcile_at:
            return token
        return ''

    def deepcopy(self) -> 'ManagedResource':
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'ManagedResource':
        return cls(
            metadata=ObjectMeta.from_dict(data.get('metadata') or {}),
            spec=ResourceSpec.from_dict(data.get('spec')),
            status=ResourceStatus.from_dict(data.get('status')),
        )

    def to_dict(self) -> dict:
        return {
            'apiVersion': API_VERSION,
            'kind': KIND,
            'metadata': self.metadata.to_dict(),
            'spec': self.spec.to_dict(),
            'status': self.status.to_dict(),
        }
