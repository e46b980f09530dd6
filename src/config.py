"""Controller configuration management.

Configuration is resolved in three layers, later layers winning:
1. Built-in defaults (ControllerConfig field defaults)
2. Optional YAML file (--config or RECONCILER_CONFIG)
3. Environment variables

Example YAML:

    max_concurrent_reconciles: 8
    no_cross_namespace_refs: true
    engine:
      url: https://tf-runner.flux-system:30000
      timeout: 600
      ca_cert: /etc/tf-controller/ca.crt
    store: kubernetes
"""

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml

from common import parse_duration

logger = logging.getLogger(__name__)

CONFIG_ENV = 'RECONCILER_CONFIG'
STORE_KINDS = ('kubernetes', 'file', 'memory')


class ConfigError(Exception):
    """Configuration error."""


def _env_flag(name: str) -> Optional[bool]:
    """Read a '1'/'true' style flag, None when unset."""
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_yaml(path: Path) -> dict:
    """Parse YAML file and return dict."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


@dataclass
class ControllerConfig:
    """Process-wide policy flags and client settings for the reconciler."""
    max_concurrent_reconciles: int = 4
    no_cross_namespace_refs: bool = False
    allow_break_the_glass: bool = False
    disable_k8s_backend: bool = False
    disable_tf_logs: bool = False

    # Execution engine
    engine_url: str = 'http://localhost:30000'
    engine_timeout: float = 600.0
    engine_ca_cert: Optional[Path] = None
    engine_insecure: bool = False

    # Artifact download retries
    http_retry: int = 10

    resync_period: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    exec_name: str = 'terraform'

    # Object store
    store: str = 'kubernetes'
    state_dir: Path = field(default_factory=lambda: Path.cwd() / '.states')
    kubeconfig: Optional[Path] = None
    field_manager: str = 'tf-controller'

    def __post_init__(self):
        if isinstance(self.engine_ca_cert, str):
            self.engine_ca_cert = Path(self.engine_ca_cert)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.kubeconfig, str):
            self.kubeconfig = Path(self.kubeconfig)
        self.validate()

    def validate(self) -> None:
        if self.max_concurrent_reconciles < 1:
            raise ConfigError("max_concurrent_reconciles must be at least 1")
        if self.engine_timeout <= 0:
            raise ConfigError("engine_timeout must be positive")
        if self.http_retry < 0:
            raise ConfigError("http_retry must not be negative")
        if self.store not in STORE_KINDS:
            raise ConfigError(
                f"Unknown store '{self.store}'. Expected one of: {', '.join(STORE_KINDS)}"
            )


def _flatten(data: dict) -> dict:
    """Flatten the nested 'engine:' section into engine_* keys."""
    flat = {k: v for k, v in data.items() if k != 'engine'}
    engine = data.get('engine') or {}
    if not isinstance(engine, dict):
        raise ConfigError("'engine' must be a mapping")
    for key, value in engine.items():
        flat[f'engine_{key}'] = value
    return flat


def _coerce(name: str, value):
    """Convert YAML scalars to the field types used by ControllerConfig."""
    if name == 'resync_period':
        try:
            return parse_duration(value)
        except ValueError as e:
            raise ConfigError(f"{name}: {e}") from e
    if name in ('max_concurrent_reconciles', 'http_retry'):
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from e
    if name == 'engine_timeout':
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name} must be a number, got {value!r}") from e
    return value


def load_config(path: Optional[Path] = None) -> ControllerConfig:
    """Load controller configuration.

    Args:
        path: YAML file; falls back to $RECONCILER_CONFIG, then defaults only

    Returns:
        Resolved ControllerConfig

    Raises:
        ConfigError: On unreadable files, unknown keys or invalid values
    """
    if path is None and (env_path := os.environ.get(CONFIG_ENV)):
        path = Path(env_path)

    values: dict = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        known = {f.name for f in fields(ControllerConfig)}
        for key, value in _flatten(_parse_yaml(path)).items():
            if key not in known:
                raise ConfigError(f"Unknown config key '{key}' in {path}")
            values[key] = _coerce(key, value)
        logger.debug(f"Loaded config from {path}")

    # Environment overrides
    if (flag := _env_flag('DISABLE_TF_K8S_BACKEND')) is not None:
        values['disable_k8s_backend'] = flag
    if (flag := _env_flag('DISABLE_TF_LOGS')) is not None:
        values['disable_tf_logs'] = flag
    if (flag := _env_flag('NO_CROSS_NAMESPACE_REFS')) is not None:
        values['no_cross_namespace_refs'] = flag
    if (flag := _env_flag('ALLOW_BREAK_THE_GLASS')) is not None:
        values['allow_break_the_glass'] = flag
    if url := os.environ.get('ENGINE_URL'):
        values['engine_url'] = url
    if state_dir := os.environ.get('RECONCILER_STATE_DIR'):
        values['state_dir'] = state_dir
    if kubeconfig := os.environ.get('KUBECONFIG'):
        values.setdefault('kubeconfig', kubeconfig)

    return ControllerConfig(**values)
