"""Execution engine protocol, errors and HTTP transport."""

from engine.client import (
    ApplyRequest,
    CancellableEngine,
    EngineClient,
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
from engine.errors import (
    EngineCancelled,
    EngineError,
    EngineNotFoundError,
    EngineUnavailableError,
)
from engine.http import HttpEngineClient

__all__ = [
    # Protocol
    "ApplyRequest",
    "CancellableEngine",
    "EngineClient",
    "FileMappingContent",
    "InterruptibleEngine",
    "InventoryItem",
    "OutputMeta",
    "PlanReply",
    "PlanRequest",
    "UploadReply",
    "WriteOutputsReply",
    "WriteOutputsRequest",
    # Errors
    "EngineCancelled",
    "EngineError",
    "EngineNotFoundError",
    "EngineUnavailableError",
    # Transport
    "HttpEngineClient",
]
