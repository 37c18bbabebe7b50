"""
Test support: intercept command executions with canned results.
"""

from .mock import (
    CallRecord,
    MockRegistration,
    MockScope,
    MockSession,
    MockSetup,
    call_count,
    calls,
    current_session,
    enable,
    is_enabled,
    reset,
    setup,
    verify_called,
)

__all__ = [
    "CallRecord",
    "MockRegistration",
    "MockScope",
    "MockSession",
    "MockSetup",
    "call_count",
    "calls",
    "current_session",
    "enable",
    "is_enabled",
    "reset",
    "setup",
    "verify_called",
]
