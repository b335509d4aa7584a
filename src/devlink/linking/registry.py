"""Registry of active linking sessions.

Single owner of session existence. Terminal transitions are idempotent
and release the session's credential namespace and protocol client.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from devlink.errors import DuplicateSessionError
from devlink.linking.session import LinkingMethod, LinkSession, LinkState
from devlink.linking.validation import mask_number, validate_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionOutcome:
    """Final state of a torn-down session, kept for status queries."""

    session_id: str
    state: LinkState
    reason: Optional[str]
    method: LinkingMethod
    finished_at: float


class SessionRegistry:
    """Map from session ID to live LinkSession.

    At most one live session exists per phone number. Once a session
    reaches a terminal state it is removed and only its outcome remains.
    """

    MAX_OUTCOMES = 256

    def __init__(
        self,
        on_terminated: Optional[Callable[[LinkSession], None]] = None,
    ):
        """Initialize empty registry.

        Args:
            on_terminated: Called synchronously when a session is removed.
        """
        self._sessions: dict[str, LinkSession] = {}
        self._by_number: dict[str, str] = {}
        self._outcomes: "OrderedDict[str, SessionOutcome]" = OrderedDict()
        self._on_terminated = on_terminated

    def create(
        self,
        phone_number: str,
        method: LinkingMethod,
        window_seconds: float,
    ) -> LinkSession:
        """Create and register a session.

        Args:
            phone_number: Normalized number.
            method: Linking method.
            window_seconds: Linking window length.

        Returns:
            New session in INITIALIZING.

        Raises:
            InvalidNumberError: If the number fails the format check.
            DuplicateSessionError: If a live session exists for the number.
        """
        validate_number(phone_number)

        if phone_number in self._by_number:
            raise DuplicateSessionError(
                f"Linking already in progress for {mask_number(phone_number)}"
            )

        session = LinkSession.create(phone_number, method, window_seconds)
        self._sessions[session.session_id] = session
        self._by_number[phone_number] = session.session_id
        self._outcomes.pop(session.session_id, None)

        logger.info(
            f"Session created: {session.session_id[:8]}... "
            f"({method.value}, {mask_number(phone_number)})"
        )
        return session

    def get(self, session_id: str) -> Optional[LinkSession]:
        """Get live session by ID."""
        return self._sessions.get(session_id)

    def get_by_number(self, phone_number: str) -> Optional[LinkSession]:
        """Get live session for a phone number."""
        session_id = self._by_number.get(phone_number)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def outcome(self, session_id: str) -> Optional[SessionOutcome]:
        """Get the recorded outcome of a finished session."""
        return self._outcomes.get(session_id)

    def list_all(self) -> list[LinkSession]:
        """Get list of all live sessions."""
        return list(self._sessions.values())

    async def complete(self, session_id: str) -> bool:
        """Mark session completed. No-op if already terminal."""
        return await self._terminate(session_id, LinkState.COMPLETED, None)

    async def fail(self, session_id: str, reason: str) -> bool:
        """Mark session failed. No-op if already terminal."""
        return await self._terminate(session_id, LinkState.FAILED, reason)

    async def expire(self, session_id: str) -> bool:
        """Mark session expired. No-op if already terminal."""
        return await self._terminate(
            session_id, LinkState.EXPIRED, "linking window expired"
        )

    async def _terminate(
        self,
        session_id: str,
        state: LinkState,
        reason: Optional[str],
    ) -> bool:
        """Move a session to a terminal state and release its resources.

        The session is invalidated before the first await, so in-flight
        work that re-checks the registry sees it gone.

        Returns:
            True if this call performed the transition.
        """
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            return False

        session.transition_to(state)
        session.failure_reason = reason
        del self._sessions[session_id]
        if self._by_number.get(session.phone_number) == session_id:
            del self._by_number[session.phone_number]

        self._record_outcome(session)
        if self._on_terminated:
            try:
                self._on_terminated(session)
            except Exception as e:
                logger.error(f"Termination hook failed for {session_id[:8]}...: {e}")

        await self._release(session)

        logger.info(
            f"Session {state.value}: {session_id[:8]}..."
            + (f" ({reason})" if reason else "")
        )
        return True

    async def _release(self, session: LinkSession) -> None:
        """Release owned resources. Every step runs even if one fails."""
        current = asyncio.current_task()
        for task in (session.event_task, session.expiry_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        client = session.protocol_handle
        session.protocol_handle = None
        if client is not None:
            try:
                await client.close()
            except Exception as e:
                logger.warning(
                    f"Protocol client close failed for "
                    f"{session.session_id[:8]}...: {e}"
                )

        store = session.credential_handle
        session.credential_handle = None
        if store is not None:
            try:
                store.destroy()
            except Exception as e:
                logger.warning(
                    f"Credential cleanup failed for {session.session_id[:8]}...: {e}"
                )

    def _record_outcome(self, session: LinkSession) -> None:
        self._outcomes[session.session_id] = SessionOutcome(
            session_id=session.session_id,
            state=session.state,
            reason=session.failure_reason,
            method=session.method,
            finished_at=time.time(),
        )
        self._outcomes.move_to_end(session.session_id)
        while len(self._outcomes) > self.MAX_OUTCOMES:
            self._outcomes.popitem(last=False)

    def __len__(self) -> int:
        """Return number of live sessions."""
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        """Check if a live session exists."""
        return session_id in self._sessions
