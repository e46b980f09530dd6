"""Status conditions and their vocabulary.

Conditions are kept in a map keyed by type so each type appears at most
once, and serialize as an ordered list in first-set order.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from common import format_time, parse_time, trim_message, utc_now

# Condition types
READY = 'Ready'
PLAN = 'Plan'
APPLY = 'Apply'
OUTPUT = 'Output'
HEALTH_CHECK = 'HealthCheck'
STATE_LOCKED = 'StateLocked'
STALLED = 'Stalled'

# Condition statuses
TRUE = 'True'
FALSE = 'False'
UNKNOWN = 'Unknown'

# Reasons
ACCESS_DENIED = 'AccessDenied'
ARTIFACT_FAILED = 'ArtifactFailed'
RETRY_LIMIT_REACHED = 'RetryLimitReached'
DELETION_BLOCKED_BY_DEPENDANTS = 'DeletionBlockedByDependantsReason'
DEPENDENCY_NOT_READY = 'DependencyNotReady'
DRIFT_DETECTED = 'DriftDetected'
DRIFT_DETECTION_FAILED = 'DriftDetectionFailed'
HEALTH_CHECKS_FAILED = 'HealthChecksFailed'
HEALTH_CHECKS_SUCCEEDED = 'HealthChecksSucceed'
NO_DRIFT = 'NoDrift'
OUTPUTS_WRITING_FAILED = 'OutputsWritingFailed'
OUTPUTS_AVAILABLE = 'TerraformOutputsAvailable'
OUTPUTS_WRITTEN = 'TerraformOutputsWritten'
PLANNED_NO_CHANGES = 'TerraformPlannedNoChanges'
PLANNED_WITH_CHANGES = 'TerraformPlannedWithChanges'
APPLY_FAILED = 'TFExecApplyFailed'
APPLIED_SUCCEEDED = 'TerraformAppliedSucceed'
APPLIED_FAILED = 'TerraformAppliedFail'
FORCE_UNLOCK = 'ForceUnlock'
INIT_FAILED = 'TFExecInitFailed'
LOCK_HELD = 'LockHeld'
NEW_FAILED = 'TFExecNewFailed'
OUTPUT_FAILED = 'TFExecOutputFailed'
PLAN_FAILED = 'TFExecPlanFailed'
TEMPLATE_GENERATION_FAILED = 'TemplateGenerationFailed'
VARS_GENERATION_FAILED = 'VarsGenerationFailed'
SELECT_WORKSPACE_FAILED = 'SelectWorkspaceFailed'
PROGRESSING = 'Progressing'
RECONCILIATION_FAILED = 'ReconciliationFailed'


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ''
    message: str = ''
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0

    def to_dict(self) -> dict:
        d = {
            'type': self.type,
            'status': self.status,
            'reason': self.reason,
            'message': self.message,
            'lastTransitionTime': format_time(self.last_transition_time),
        }
        if self.observed_generation:
            d['observedGeneration'] = self.observed_generation
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Condition':
        return cls(
            type=data['type'],
            status=data.get('status', UNKNOWN),
            reason=data.get('reason', ''),
            message=data.get('message', ''),
            last_transition_time=parse_time(data.get('lastTransitionTime')),
            observed_generation=data.get('observedGeneration', 0),
        )


class ConditionSet:
    """Keyed condition collection.

    set() only moves last_transition_time when the status actually changes,
    so polling clients can tell how long a condition has held.
    """

    def __init__(self, conditions: Optional[list[Condition]] = None):
        self._by_type: dict[str, Condition] = {}
        for condition in conditions or []:
            self._by_type[condition.type] = condition

    def get(self, condition_type: str) -> Optional[Condition]:
        return self._by_type.get(condition_type)

    def set(
        self,
        condition_type: str,
        status: str,
        reason: str,
        message: str = '',
        observed_generation: int = 0,
    ) -> Condition:
        message = trim_message(message)
        existing = self._by_type.get(condition_type)
        if existing is None:
            condition = Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=utc_now(),
                observed_generation=observed_generation,
            )
            self._by_type[condition_type] = condition
            return condition

        if existing.status != status:
            existing.status = status
            existing.last_transition_time = utc_now()
        existing.reason = reason
        existing.message = message
        existing.observed_generation = observed_generation
        return existing

    def remove(self, condition_type: str) -> None:
        self._by_type.pop(condition_type, None)

    def status_of(self, condition_type: str) -> Optional[str]:
        condition = self._by_type.get(condition_type)
        return condition.status if condition else None

    def reason_of(self, condition_type: str) -> str:
        condition = self._by_type.get(condition_type)
        return condition.reason if condition else ''

    def is_true(self, condition_type: str) -> bool:
        return self.status_of(condition_type) == TRUE

    def is_false(self, condition_type: str) -> bool:
        return self.status_of(condition_type) == FALSE

    def is_unknown(self, condition_type: str) -> bool:
        return self.status_of(condition_type) == UNKNOWN

    def has_reason(self, condition_type: str, *reasons: str) -> bool:
        return self.reason_of(condition_type) in reasons

    def __contains__(self, condition_type: str) -> bool:
        return condition_type in self._by_type

    def __iter__(self) -> Iterator[Condition]:
        return iter(list(self._by_type.values()))

    def __len__(self) -> int:
        return len(self._by_type)

    def to_list(self) -> list[dict]:
        return [c.to_dict() for c in self._by_type.values()]

    @classmethod
    def from_list(cls, data: Optional[list[dict]]) -> 'ConditionSet':
        return cls([Condition.from_dict(item) for item in data or []])
