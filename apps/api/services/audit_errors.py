"""Audit pipeline exceptions."""

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class AuditError(Exception):
    """Base class for audit pipeline errors."""


class AuditNotFoundError(AuditError):
    def __init__(self, audit_id: str):
        super().__init__(f"Audit {audit_id} not found")
        self.audit_id = audit_id


class ChannelResolutionError(AuditError):
    """The channel reference could not be resolved to a channel."""


class ProviderError(AuditError):
    """A channel data source or analysis provider call failed."""


class StageTimeoutError(ProviderError):
    """An external call or a whole stage exceeded its time limit."""


class AuditPersistenceError(AuditError):
    """Writing audit or section state failed; the run cannot continue."""


class ResumeNotPossibleError(AuditError):
    """The audit has no usable checkpoint to resume from."""


class AuditLockedError(AuditError):
    """Another run currently holds the audit."""

    def __init__(self, audit_id: str):
        super().__init__(f"Audit {audit_id} is already being processed")
        self.audit_id = audit_id


class AuditCancelledError(AuditError):
    """The run was cancelled by its caller."""


class InvalidSectionTransition(AuditError):
    def __init__(self, stage: str, current: str, target: str):
        super().__init__(f"Section {stage} cannot move from {current} to {target}")
        self.stage = stage
        self.current = current
        self.target = target


async def call_with_timeout(awaitable: Awaitable[T], timeout: Optional[float], what: str) -> T:
    """Await ``awaitable`` bounded by ``timeout`` seconds (None means unbounded)."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise StageTimeoutError(f"{what} timed out after {timeout:g}s") from None
