"""Data model for managed infrastructure resources.

Condition vocabulary, the ManagedResource spec/status model, status
transitions, plan identifiers and backend block synthesis.
"""

from api.conditions import Condition, ConditionSet
from api.planid import get_approve_message, get_plan_id
from api.types import (
    FINALIZER,
    InventoryEntry,
    ManagedResource,
    ObjectKey,
    ObjectMeta,
    ResourceSpec,
    ResourceStatus,
)

__all__ = [
    "Condition",
    "ConditionSet",
    "get_approve_message",
    "get_plan_id",
    "FINALIZER",
    "InventoryEntry",
    "ManagedResource",
    "ObjectKey",
    "ObjectMeta",
    "ResourceSpec",
    "ResourceStatus",
]
