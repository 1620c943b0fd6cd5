"""Wire schemas for the sync API."""

from .wire import (
    MutationRequest,
    MutationResult,
    PullChanges,
    WireFormatError,
    parse_batch_response,
    parse_pull_response,
)

__all__ = [
    "MutationRequest",
    "MutationResult",
    "PullChanges",
    "WireFormatError",
    "parse_batch_response",
    "parse_pull_response",
]
