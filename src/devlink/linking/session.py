"""Linking session state machine.

Represents one attempt to link a phone number, with monotonic state
transitions and a fixed linking window.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from devlink.credentials import ScopedCredentialStore
from devlink.linking.validation import derive_session_id


class LinkState(Enum):
    """Linking session states."""

    INITIALIZING = "initializing"
    AWAITING_ARTIFACT = "awaiting_artifact"
    LINKED = "linked"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({LinkState.COMPLETED, LinkState.FAILED, LinkState.EXPIRED})

VALID_TRANSITIONS: dict[LinkState, frozenset[LinkState]] = {
    # COMPLETED directly: account already registered, nothing to pair
    LinkState.INITIALIZING: frozenset(
        {
            LinkState.AWAITING_ARTIFACT,
            LinkState.COMPLETED,
            LinkState.FAILED,
            LinkState.EXPIRED,
        }
    ),
    LinkState.AWAITING_ARTIFACT: frozenset(
        {LinkState.LINKED, LinkState.FAILED, LinkState.EXPIRED}
    ),
    LinkState.LINKED: frozenset(
        {LinkState.DELIVERING, LinkState.FAILED, LinkState.EXPIRED}
    ),
    LinkState.DELIVERING: frozenset(
        {LinkState.COMPLETED, LinkState.FAILED, LinkState.EXPIRED}
    ),
    LinkState.COMPLETED: frozenset(),
    LinkState.FAILED: frozenset(),
    LinkState.EXPIRED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """State change not allowed from the current state."""

    pass


class LinkingMethod(Enum):
    """How the user authorizes the link. Mutually exclusive per session."""

    PAIRING_CODE = "code"
    SCANNABLE_CODE = "qr"


@dataclass(frozen=True)
class PairingArtifact:
    """One issued pairing artifact. Immutable; reissue replaces it.

    Attributes:
        session_id: Session the artifact belongs to.
        kind: "code" or "qr".
        value: Raw value from the protocol client.
        issued_at: Unix timestamp.
    """

    session_id: str
    kind: str
    value: str
    issued_at: float = field(default_factory=time.time)


@dataclass
class LinkSession:
    """Represents one linking attempt.

    Attributes:
        session_id: Derived from the phone number (16 hex chars).
        phone_number: Normalized 10-15 digit number.
        method: Pairing code or scannable code.
        created_at: Unix timestamp when session was created.
        expires_at: End of the linking window.
        state: Current state.
        credential_handle: Scoped credential store, owned by this session.
        protocol_handle: Protocol client, owned by this session.
        artifact: Most recently issued pairing artifact.
        failure_reason: Why the session failed, if it did.
        delivery_attempted: Whether credential delivery was started.
    """

    session_id: str
    phone_number: str
    method: LinkingMethod
    created_at: float
    expires_at: float
    state: LinkState = LinkState.INITIALIZING

    credential_handle: Optional[ScopedCredentialStore] = None
    protocol_handle: Optional[Any] = None  # ProtocolClient
    artifact: Optional[PairingArtifact] = None
    failure_reason: Optional[str] = None
    delivery_attempted: bool = False

    # Background tasks owned by the session
    event_task: Optional[asyncio.Task] = field(default=None, repr=False)
    expiry_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        phone_number: str,
        method: LinkingMethod,
        window_seconds: float,
    ) -> "LinkSession":
        """Create a new linking session.

        Args:
            phone_number: Already validated number.
            method: Linking method.
            window_seconds: Length of the linking window.

        Returns:
            New LinkSession in INITIALIZING.
        """
        now = time.time()
        return cls(
            session_id=derive_session_id(phone_number),
            phone_number=phone_number,
            method=method,
            created_at=now,
            expires_at=now + window_seconds,
        )

    @property
    def is_terminal(self) -> bool:
        """True once completed, failed, or expired."""
        return self.state in TERMINAL_STATES

    def is_expired(self) -> bool:
        """Check whether the linking window has elapsed."""
        return time.time() >= self.expires_at

    def transition_to(self, new_state: LinkState) -> None:
        """Transition to a new state with validation.

        Args:
            new_state: Target state.

        Raises:
            InvalidTransitionError: If not valid from the current state.
        """
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Invalid transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
