"""Event recording for managed resources."""

import logging
from typing import Optional

from api.types import ManagedResource
from cluster.store import EVENT_NORMAL, EVENT_WARNING, ResourceStore
from common import trim_message

logger = logging.getLogger(__name__)

SEVERITY_INFO = 'info'
SEVERITY_ERROR = 'error'

# Events share the condition message cap
MAX_EVENT_MESSAGE_LENGTH = 20000


class EventRecorder:
    """Logs and records events against a resource, tagged with the revision."""

    def __init__(self, store: ResourceStore):
        self.store = store

    def event(self, resource: ManagedResource, revision: str, severity: str, message: str,
              reason: Optional[str] = None, metadata: Optional[dict] = None) -> None:
        if severity == SEVERITY_ERROR:
            event_type = EVENT_WARNING
            logger.error(f"[{resource.key}] {message}")
        else:
            event_type = EVENT_NORMAL
            logger.info(f"[{resource.key}] {message}")

        if reason is None:
            reason = severity
        annotations = dict(metadata or {})
        if revision:
            annotations['revision'] = revision
        self.store.record_event(
            resource, event_type, reason, trim_message(message, MAX_EVENT_MESSAGE_LENGTH), annotations
        )
