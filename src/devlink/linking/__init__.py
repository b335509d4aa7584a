"""Linking module for devlink.

Provides phone-number linking functionality including:
- Session state machine
- Session registry with idempotent teardown
- Orchestration of the protocol client event stream
- Pairing artifact rendering
"""

from .orchestrator import LinkOrchestrator, LinkResult, SessionStatus
from .registry import SessionOutcome, SessionRegistry
from .session import (
    InvalidTransitionError,
    LinkingMethod,
    LinkSession,
    LinkState,
    PairingArtifact,
)

__all__ = [
    "InvalidTransitionError",
    "LinkOrchestrator",
    "LinkResult",
    "LinkSession",
    "LinkState",
    "LinkingMethod",
    "PairingArtifact",
    "SessionOutcome",
    "SessionRegistry",
    "SessionStatus",
]
