"""Post-apply health checks.

Addresses and URLs may reference written outputs with `${{ .name }}`.
"""

import ipaddress
import logging
import re
import socket
from typing import Optional
from urllib.parse import urlparse

import requests

from api import conditions as c
from api import status
from api.types import HEALTH_CHECK_HTTP, HEALTH_CHECK_TCP, HealthCheck, ManagedResource
from cluster.events import SEVERITY_ERROR
from engine.errors import EngineError
from reconciler.context import PassContext
from reconciler.errors import HealthCheckError

logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r'\$\{\{\s*\.([A-Za-z_][A-Za-z0-9_\-]*)\s*\}\}')
LABEL_PATTERN = re.compile(r'^[^\W_](?:[^\W_]|-){0,62}$')


class HealthCheckFailure(Exception):
    """A single check failed."""


def should_do_health_checks(resource: ManagedResource) -> bool:
    """Check after a fresh apply, or again after a failed round."""
    if not resource.spec.health_checks:
        return False
    hc_reason = resource.status.conditions.reason_of(c.HEALTH_CHECK)
    if hc_reason == c.HEALTH_CHECKS_FAILED:
        return True
    return resource.status.conditions.reason_of(c.APPLY) == c.APPLIED_SUCCEEDED and not hc_reason


def render_template(text: str, values: dict[str, str]) -> str:
    """Substitute `${{ .key }}` placeholders.

    Raises:
        HealthCheckFailure: A referenced key has no value
    """
    def replace(match):
        key = match.group(1)
        if key not in values:
            raise HealthCheckFailure(f'no value for output "{key}"')
        return str(values[key])

    return TEMPLATE_PATTERN.sub(replace, text)


def _valid_label(label: str) -> bool:
    if not label or label.startswith('-') or label.endswith('-'):
        return False
    return LABEL_PATTERN.match(label) is not None


def split_host_port(address: str) -> tuple[str, int]:
    """Validate a TCP address and split it.

    Raises:
        HealthCheckFailure: Scheme present, bad host or bad port
    """
    if '://' in address:
        raise HealthCheckFailure('URL schemas are not allowed')

    if address.startswith('['):
        host, sep, port = address[1:].partition(']:')
        if not sep:
            raise HealthCheckFailure(f'address {address}: missing port in address')
    else:
        host, sep, port = address.rpartition(':')
        if not sep:
            raise HealthCheckFailure(f'address {address}: missing port in address')
        if ':' in host:
            raise HealthCheckFailure(f'address {address}: too many colons in address')

    try:
        ipaddress.ip_address(host)
    except ValueError:
        if not all(_valid_label(label) for label in host.split('.')):
            raise HealthCheckFailure('invalid host format')

    if not port.isdigit() or not 0 < int(port) <= 65535:
        raise HealthCheckFailure('invalid port number')
    return host, int(port)


def tcp_check(name: str, address: str, timeout: float) -> None:
    try:
        host, port = split_host_port(address)
    except HealthCheckFailure as e:
        raise HealthCheckFailure(f'invalid address for tcp health check: {address}, {e}') from e
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as e:
        raise HealthCheckFailure(f'failed to perform tcp health check for {name} on {address}: {e}') from e


def http_check(name: str, url: str, timeout: float, session: Optional[requests.Session] = None) -> None:
    parsed = urlparse(url)
    if not parsed.scheme or not (parsed.netloc or parsed.path.startswith('/')):
        raise HealthCheckFailure(f'invalid url for http health check: {url}')

    getter = session.get if session is not None else requests.get
    try:
        response = getter(url, timeout=timeout)
    except requests.RequestException as e:
        raise HealthCheckFailure(f'failed to perform http health check for {name} on {url}: {e}') from e

    if 200 <= response.status_code < 400:
        logger.info(f"HTTP health check succeeded for {name} on {url}: {response.status_code}")
        return
    raise HealthCheckFailure(
        f'failed to perform http health check for {name} on {url}, response body: {response.text}'
    )


def _fail(resource: ManagedResource, message: str) -> HealthCheckError:
    status.health_check_failed(resource, message)
    logger.error(f"[{resource.key}] {message}")
    return HealthCheckError(message)


def run_health_check(check: HealthCheck, values: dict[str, str], session: Optional[requests.Session] = None) -> None:
    timeout = check.get_timeout().total_seconds()
    if check.type == HEALTH_CHECK_TCP:
        tcp_check(check.name, render_template(check.address, values), timeout)
    elif check.type == HEALTH_CHECK_HTTP:
        http_check(check.name, render_template(check.url, values), timeout, session)
    else:
        logger.warning(f"Skipping health check {check.name}: unknown type {check.type!r}")


def do_health_checks(ctx: PassContext, resource: ManagedResource, session: Optional[requests.Session] = None) -> None:
    """Run every configured check, stopping at the first failure.

    Raises:
        HealthCheckError: Outputs unavailable, a template failed or a check failed
    """
    values = {}
    wots = resource.spec.write_outputs_to_secret
    if wots is not None and wots.name:
        try:
            values = ctx.engine.get_outputs(resource.namespace, wots.name)
        except EngineError as e:
            message = f'error getting terraform output for health checks: {e}'
            raise _fail(resource, message) from e

    for check in resource.spec.health_checks:
        logger.info(f"[{resource.key}] Running {check.type} health check {check.name}")
        try:
            run_health_check(check, values, session)
        except HealthCheckFailure as e:
            label = 'TCP' if check.type == HEALTH_CHECK_TCP else 'HTTP'
            target = check.address if check.type == HEALTH_CHECK_TCP else check.url
            ctx.event(resource, SEVERITY_ERROR, f'{label} health check error: {check.name}, url: {target}')
            raise _fail(resource, str(e)) from e

    status.health_check_succeeded(resource, 'Health checks succeeded')
