"""Common utilities and types shared by the reconciler packages."""

import logging
import re
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Condition messages are capped so a huge plan diff cannot blow up the status
MAX_MESSAGE_LENGTH = 20000

_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')
_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}


def trim_message(message: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Cut a message to at most `limit` characters, marking the cut with '...'."""
    if len(message) <= limit:
        return message
    return message[:limit] + '...'


def parse_duration(value: Union[str, int, float, timedelta, None]) -> Optional[timedelta]:
    """Parse a duration such as '1h30m', '15s' or '500ms'.

    Bare numbers are read as seconds. Returns None for None or ''.

    Raises:
        ValueError: If the string is not a valid duration
    """
    if value is None or value == '':
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = value.strip()
    if text == '0':
        return timedelta(0)

    sign = 1
    if text[:1] in ('-', '+'):
        sign = -1 if text[0] == '-' else 1
        text = text[1:]

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=sign * seconds)


def format_duration(delta: Optional[timedelta]) -> str:
    """Render a timedelta back into the compact '1h2m3s' form."""
    if delta is None:
        return ''
    total = delta.total_seconds()
    if total == 0:
        return '0s'
    sign = '-' if total < 0 else ''
    total = abs(total)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    out = ''
    if hours:
        out += f'{int(hours)}h'
    if minutes:
        out += f'{int(minutes)}m'
    if seconds or not out:
        out += f'{seconds:g}s'
    return sign + out


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def retry_call(
    func: Callable[[], T],
    attempts: int = 3,
    interval: float = 1.0,
    retry_on: tuple = (Exception,),
    description: str = 'operation',
) -> T:
    """Call func until it succeeds or attempts run out.

    Only exceptions listed in retry_on are retried; the last one is re-raised.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == attempts:
                raise
            logger.debug(f"{description} failed (attempt {attempt}/{attempts}): {e}")
            time.sleep(interval)
    raise RuntimeError('unreachable')  # pragma: no cover


def wait_until(
    predicate: Callable[[], bool],
    timeout: Optional[float] = None,
    interval: float = 10.0,
    cancelled: Optional[Callable[[], bool]] = None,
) -> bool:
    """Poll predicate until it returns True.

    Returns False on timeout or when cancelled() becomes true.
    """
    start = time.time()
    while True:
        if predicate():
            return True
        if cancelled is not None and cancelled():
            return False
        if timeout is not None and time.time() - start >= timeout:
            return False
        time.sleep(interval)


def configure_logging(verbose: bool = False, stream=None) -> None:
    """Configure root logging for the CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=stream or sys.stderr,
    )
