"""
Engine errors.

Every state-mutating operation either applies its whole effect set or
raises one of these without touching anything.
"""
from __future__ import annotations

from typing import Optional


class FlowEngineError(Exception):
    """Base exception for all engine operations."""


class InvalidSessionTransition(FlowEngineError):
    """Operation attempted from a state that does not allow it."""

    def __init__(self, session_id: str, operation: str, status: str, allowed: tuple = ()):
        self.session_id = session_id
        self.operation = operation
        self.status = status
        self.allowed = allowed
        allowed_txt = f" (allowed from: {', '.join(allowed)})" if allowed else ""
        super().__init__(f"Cannot {operation} session {session_id} in status '{status}'{allowed_txt}")


class UnknownResponseLabel(FlowEngineError):
    """Classifier returned a label that is not configured on the current step."""

    def __init__(self, session_id: str, step_id: str, label: str, known: Optional[list[str]] = None):
        self.session_id = session_id
        self.step_id = step_id
        self.label = label
        self.known = known or []
        super().__init__(
            f"Label '{label}' is not a response on step '{step_id}' "
            f"(known: {', '.join(self.known) or 'none'})"
        )


class NoBusinessHoursConfigured(FlowEngineError):
    """The weekly calendar has no enabled day, so nothing can ever be sent."""

    def __init__(self, timezone: str = ""):
        self.timezone = timezone
        super().__init__(f"No enabled business day configured (timezone={timezone or 'n/a'})")


class StaleDripClaim(FlowEngineError):
    """Conditional drip status update lost to another worker."""

    def __init__(self, drip_id: str, expected: tuple, target: str):
        self.drip_id = drip_id
        self.expected = expected
        self.target = target
        super().__init__(f"Drip {drip_id} is no longer in {', '.join(expected)}; cannot mark {target}")


class SessionConflict(FlowEngineError):
    """Session row changed underneath an update (optimistic version check failed)."""

    def __init__(self, session_id: str, expected_version: int):
        self.session_id = session_id
        self.expected_version = expected_version
        super().__init__(f"Session {session_id} was modified concurrently (expected version {expected_version})")


class SessionNotFound(FlowEngineError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class FlowNotFound(FlowEngineError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow {flow_id} not found")


class TransportError(FlowEngineError):
    """Message transport could not deliver (after its own retries)."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)
