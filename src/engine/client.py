"""Execution engine protocol.

The engine owns the terraform processes; the reconciler only issues
blocking request/response calls through EngineClient. Any object with
these methods works, the HTTP transport and test doubles included.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from engine.errors import EngineCancelled

logger = logging.getLogger(__name__)


@dataclass
class UploadReply:
    working_dir: str
    tmp_dir: str


@dataclass
class FileMappingContent:
    content: bytes
    location: str
    path: str


@dataclass
class PlanRequest:
    instance: str
    out: str = ''
    refresh: bool = True
    targets: list = field(default_factory=list)
    destroy: bool = False
    lock_timeout: str = ''
    disable_lock: bool = False


@dataclass
class PlanReply:
    drifted: bool
    plan_created: bool = False
    message: str = ''


@dataclass
class ApplyRequest:
    instance: str
    dir_or_plan: str = ''
    refresh_before_apply: bool = False
    targets: list = field(default_factory=list)
    parallelism: int = 0


@dataclass
class InventoryItem:
    name: str
    type: str
    identifier: str


@dataclass
class OutputMeta:
    sensitive: bool = False
    type: object = None
    value: object = None


@dataclass
class WriteOutputsRequest:
    namespace: str
    name: str
    secret_name: str
    uid: str
    outputs: dict
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)


@dataclass
class WriteOutputsReply:
    changed: bool
    message: str = ''


@runtime_checkable
class EngineClient(Protocol):
    """Remote execution engine operations."""

    def upload_and_extract(self, namespace: str, name: str, tar_gz: bytes, path: str) -> UploadReply: ...

    def cleanup_dir(self, tmp_dir: str) -> str: ...

    def write_backend_config(self, dir_path: str, backend_config: str) -> str: ...

    def process_cli_config(self, dir_path: str, namespace: str, name: str) -> str: ...

    def look_path(self, file: str) -> str: ...

    def new_instance(self, working_dir: str, exec_path: str, instance_id: str, resource: dict) -> str: ...

    def set_env(self, instance: str, envs: dict) -> None: ...

    def create_file_mappings(self, working_dir: str, mappings: list[FileMappingContent]) -> None: ...

    def generate_vars(self, instance: str, working_dir: str) -> str: ...

    def generate_templates(self, working_dir: str) -> str: ...

    def init(self, instance: str, upgrade: bool, force_copy: bool) -> str: ...

    def select_workspace(self, instance: str) -> str: ...

    def force_unlock(self, instance: str, lock_identifier: str) -> str: ...

    def plan(self, request: PlanRequest) -> PlanReply: ...

    def save_plan(self, instance: str, name: str, namespace: str, uid: str, revision: str,
                  backend_disabled: bool) -> str: ...

    def load_plan(self, instance: str, name: str, namespace: str, backend_disabled: bool,
                  pending_plan: str) -> str: ...

    def apply(self, request: ApplyRequest) -> str: ...

    def destroy(self, instance: str, targets: list) -> str: ...

    def get_inventory(self, instance: str) -> list[InventoryItem]: ...

    def output(self, instance: str) -> dict[str, OutputMeta]: ...

    def write_outputs(self, request: WriteOutputsRequest) -> WriteOutputsReply: ...

    def get_outputs(self, namespace: str, secret_name: str) -> dict[str, str]: ...

    def show_plan_file_raw(self, instance: str, filename: str) -> str: ...

    def finalize_secrets(self, namespace: str, name: str, workspace: str, has_output_secret: bool,
                         output_secret_name: str) -> str: ...

    def start_break_the_glass_session(self, namespace: str, name: str) -> str: ...

    def has_break_the_glass_session_done(self, namespace: str, name: str) -> bool: ...


class InterruptibleEngine:
    """Base for transports that can give up on a call already in flight."""

    def bind_cancel(self, cancelled: threading.Event) -> 'InterruptibleEngine':
        """Return a client whose in-flight calls end with EngineCancelled once cancelled is set."""
        return self


class CancellableEngine:
    """Wraps an EngineClient so every call first checks a cancel event.

    Interruptible transports are bound to the same event, so a call in
    flight is abandoned with EngineCancelled too. Scratch directory
    cleanup is always let through.
    """

    UNCHECKED = frozenset({'cleanup_dir'})

    def __init__(self, engine: EngineClient, cancelled: Optional[threading.Event] = None):
        self._cancelled = cancelled or threading.Event()
        if isinstance(engine, InterruptibleEngine):
            engine = engine.bind_cancel(self._cancelled)
        self._engine = engine

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check(self) -> None:
        if self._cancelled.is_set():
            raise EngineCancelled()

    def __getattr__(self, name: str):
        target = getattr(self._engine, name)
        if not callable(target) or name in self.UNCHECKED:
            return target

        def call(*args, **kwargs):
            self.check()
            logger.debug(f"engine.{name}")
            return target(*args, **kwargs)

        return call
