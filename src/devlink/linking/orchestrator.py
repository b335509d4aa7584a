"""Link orchestrator drives linking sessions end to end.

Creates one session per phone number, wires its credential namespace and
protocol client, consumes the client's event stream in order, delivers
the credential bundle once the account is linked, and tears everything
down on completion, failure, or expiry.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from devlink.config import LinkingConfig
from devlink.credentials import CredentialStore
from devlink.errors import (
    DeliveryError,
    DevlinkError,
    PairingCodeError,
    SessionNotFoundError,
    StorageError,
)
from devlink.formatting import format_pairing_code
from devlink.linking.registry import SessionRegistry
from devlink.linking.session import (
    LinkingMethod,
    LinkSession,
    LinkState,
    PairingArtifact,
)
from devlink.linking.validation import canonical_identity, validate_number
from devlink.protocol import (
    ClientConfig,
    ConnectionClose,
    ConnectionOpen,
    CredsUpdated,
    ProtocolClientFactory,
    ProtocolEvent,
    QrEvent,
)
from devlink.version import VersionFetcher

if TYPE_CHECKING:
    from devlink.broadcast import BroadcastChannel

logger = logging.getLogger(__name__)

BUNDLE_MIMETYPE = "application/json"


@dataclass(frozen=True)
class LinkResult:
    """What a caller gets back from start_linking.

    Attributes:
        session_id: Session handle for status queries.
        state: State when start_linking returned.
        method: Linking method.
        expires_at: End of the linking window.
        code: Formatted pairing code (pairing-code method only).
    """

    session_id: str
    state: LinkState
    method: LinkingMethod
    expires_at: float
    code: Optional[str] = None


@dataclass(frozen=True)
class SessionStatus:
    """Current or final state of a session."""

    session_id: str
    state: LinkState
    method: LinkingMethod
    expires_at: Optional[float] = None
    reason: Optional[str] = None


class LinkOrchestrator:
    """Orchestrates linking sessions.

    All work runs on one event loop. Each session has its own event
    consumer task and expiry timer, so a slow session never delays
    another.
    """

    def __init__(
        self,
        client_factory: ProtocolClientFactory,
        credential_store: CredentialStore,
        broadcast: "BroadcastChannel",
        version_fetcher: VersionFetcher,
        config: LinkingConfig | None = None,
        browser: tuple[str, ...] = ("Mac OS", "Safari", "14.4.1"),
    ):
        """Initialize orchestrator.

        Args:
            client_factory: Builds one protocol client per session.
            credential_store: Root of per-session credential namespaces.
            broadcast: Shared pairing artifact broadcast channel.
            version_fetcher: Bounded protocol version lookup.
            config: Linking timing and delivery settings.
            browser: Browser identity announced by the protocol client.
        """
        self._client_factory = client_factory
        self._credentials = credential_store
        self._broadcast = broadcast
        self._versions = version_fetcher
        self._config = config or LinkingConfig()
        self._browser = tuple(browser)
        self._registry = SessionRegistry(on_terminated=self._on_terminated)

    @property
    def registry(self) -> SessionRegistry:
        """The session registry."""
        return self._registry

    @property
    def config(self) -> LinkingConfig:
        """Linking configuration."""
        return self._config

    # =========================================================================
    # Inbound operations
    # =========================================================================

    async def start_linking(
        self,
        phone_number: str,
        method: LinkingMethod = LinkingMethod.PAIRING_CODE,
    ) -> LinkResult:
        """Start linking a phone number.

        Returns once the session awaits an artifact (with the pairing code
        for the pairing-code method); the handshake continues in the
        background.

        Args:
            phone_number: 10-15 digits, no separators.
            method: Pairing code (pull) or scannable code (push).

        Returns:
            LinkResult for the new session.

        Raises:
            InvalidNumberError: Bad number; nothing was created.
            DuplicateSessionError: A session for the number is live.
            PairingCodeError: No usable code within the linking window; the
                session was failed or expired.
            StorageError: Credential namespace unavailable; session failed.
            DevlinkError: Protocol client could not be built; session failed.
        """
        validate_number(phone_number)
        session = self._registry.create(
            phone_number, method, self._config.window_seconds
        )
        session_id = session.session_id

        try:
            session.credential_handle = self._credentials.open(session_id)
        except StorageError:
            await self._registry.fail(session_id, "credential storage unavailable")
            raise

        session.expiry_task = asyncio.create_task(self._expiry_timer(session))

        version = await self._versions.fetch()
        if not self._is_current(session):
            return self._result(session)

        try:
            client = self._client_factory(
                ClientConfig(
                    store=session.credential_handle,
                    version=version,
                    browser=self._browser,
                )
            )
        except Exception as e:
            logger.error(f"Protocol client creation failed for {session_id[:8]}...: {e}")
            await self._registry.fail(session_id, "protocol client unavailable")
            raise DevlinkError("Protocol client unavailable") from e
        session.protocol_handle = client

        try:
            registered = await asyncio.wait_for(
                client.is_registered(), timeout=self._remaining(session)
            )
        except asyncio.TimeoutError:
            logger.warning(f"Registration check timed out for {session_id[:8]}...")
            if self._is_current(session):
                await self._registry.expire(session_id)
            return self._result(session)
        except Exception as e:
            logger.warning(f"Registration check failed for {session_id[:8]}...: {e}")
            registered = False
        if not self._is_current(session):
            return self._result(session)

        if registered:
            logger.info(f"Account already linked: {session_id[:8]}...")
            await self._registry.complete(session_id)
            return self._result(session)

        session.transition_to(LinkState.AWAITING_ARTIFACT)
        session.event_task = asyncio.create_task(self._consume_events(session))

        if method is LinkingMethod.SCANNABLE_CODE:
            return self._result(session)

        return await self._request_code(session)

    def get_status(self, session_id: str) -> Optional[SessionStatus]:
        """Get the state of a live session or the outcome of a finished one."""
        session = self._registry.get(session_id)
        if session is not None:
            return SessionStatus(
                session_id=session.session_id,
                state=session.state,
                method=session.method,
                expires_at=session.expires_at,
                reason=session.failure_reason,
            )

        outcome = self._registry.outcome(session_id)
        if outcome is not None:
            return SessionStatus(
                session_id=outcome.session_id,
                state=outcome.state,
                method=outcome.method,
                reason=outcome.reason,
            )
        return None

    async def cancel(self, session_id: str) -> None:
        """Cancel a live session.

        Raises:
            SessionNotFoundError: No live session has this id.
        """
        if not await self._registry.fail(session_id, "cancelled"):
            raise SessionNotFoundError(f"No live session {session_id}")

    async def shutdown(self) -> None:
        """Tear down every live session and release shared resources."""
        for session in self._registry.list_all():
            await self._registry.fail(session.session_id, "shutdown")
        await self._versions.close()
        logger.info("Link orchestrator stopped")

    # =========================================================================
    # Pairing code
    # =========================================================================

    async def _request_code(self, session: LinkSession) -> LinkResult:
        session_id = session.session_id
        client = session.protocol_handle

        try:
            code = await asyncio.wait_for(
                client.request_pairing_code(session.phone_number),
                timeout=self._remaining(session),
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Pairing code request timed out for {session_id[:8]}...")
            if self._is_current(session):
                await self._registry.expire(session_id)
            raise PairingCodeError("Failed to generate pairing code") from e
        except Exception as e:
            logger.error(f"Failed to get pairing code for {session_id[:8]}...: {e}")
            if self._is_current(session):
                await self._registry.fail(session_id, "pairing code request failed")
            raise PairingCodeError("Failed to generate pairing code") from e

        if not self._is_current(session):
            # Torn down while waiting; the code is stale
            return self._result(session)

        if not code:
            await self._registry.fail(session_id, "empty pairing code")
            raise PairingCodeError("Failed to generate pairing code")

        self._set_artifact(session, "code", code)
        logger.info(f"Pairing code issued for {session_id[:8]}...")
        return self._result(
            session, code=format_pairing_code(code, self._config.code_group_size)
        )

    # =========================================================================
    # Connection state machine
    # =========================================================================

    async def _consume_events(self, session: LinkSession) -> None:
        """Process the session's protocol events in emission order."""
        client = session.protocol_handle
        if client is None:
            return
        try:
            async for event in client.events():
                if not self._is_current(session):
                    break
                await self._handle_event(session, event)
        except Exception as e:
            # Treated like a transient close: the expiry timer escalates
            logger.error(f"Event stream error for {session.session_id[:8]}...: {e}")

    async def _handle_event(self, session: LinkSession, event: ProtocolEvent) -> None:
        session_id = session.session_id

        if isinstance(event, CredsUpdated):
            store = session.credential_handle
            if store is None:
                return
            try:
                store.on_update(event.creds)
            except StorageError as e:
                logger.error(f"Failed to persist creds for {session_id[:8]}...: {e}")

        elif isinstance(event, QrEvent):
            if (
                session.state is LinkState.AWAITING_ARTIFACT
                and session.method is LinkingMethod.SCANNABLE_CODE
            ):
                self._set_artifact(session, "qr", event.artifact)
                logger.debug(f"QR updated for {session_id[:8]}...")

        elif isinstance(event, ConnectionOpen):
            if session.state is LinkState.AWAITING_ARTIFACT:
                session.transition_to(LinkState.LINKED)
                logger.info(f"Device linked: {session_id[:8]}...")
                await self._deliver(session)

        elif isinstance(event, ConnectionClose):
            if session.state is not LinkState.AWAITING_ARTIFACT:
                logger.debug(
                    f"Ignoring close in {session.state.value} for {session_id[:8]}..."
                )
            elif event.is_auth_rejected:
                await self._registry.fail(session_id, "authentication rejected")
            else:
                logger.warning(
                    f"Connection closed for {session_id[:8]}... "
                    f"(status={event.status_code}), waiting for link"
                )

        else:
            logger.debug(f"Unknown event {event!r} for {session_id[:8]}...")

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _deliver(self, session: LinkSession) -> None:
        """Send the credential bundle to the linked account, then complete.

        Best-effort: failure is logged and the session still completes.
        """
        session_id = session.session_id
        await asyncio.sleep(self._config.settle_seconds)
        if not self._is_current(session):
            logger.debug(f"Session gone before delivery: {session_id[:8]}...")
            return

        session.transition_to(LinkState.DELIVERING)
        session.delivery_attempted = True

        try:
            await self._send_bundle(session)
            if not self._is_current(session):
                logger.debug(f"Discarding delivery result for {session_id[:8]}...")
                return
            logger.info(f"Credential bundle delivered for {session_id[:8]}...")
            await asyncio.sleep(self._config.post_delivery_seconds)
        except DeliveryError as e:
            logger.warning(f"Credential delivery failed for {session_id[:8]}...: {e}")

        if self._is_current(session):
            await self._registry.complete(session_id)

    async def _send_bundle(self, session: LinkSession) -> None:
        store = session.credential_handle
        client = session.protocol_handle
        if store is None or client is None:
            raise DeliveryError("session resources already released")

        try:
            bundle = store.read_bundle()
            await asyncio.wait_for(
                client.send_document(
                    canonical_identity(
                        session.phone_number, self._config.identity_domain
                    ),
                    bundle,
                    file_name=self._config.bundle_file_name,
                    mimetype=BUNDLE_MIMETYPE,
                    caption=self._config.bundle_caption,
                ),
                timeout=self._config.delivery_timeout,
            )
        except asyncio.TimeoutError as e:
            raise DeliveryError(
                f"timed out after {self._config.delivery_timeout}s"
            ) from e
        except DevlinkError as e:
            raise DeliveryError(str(e)) from e
        except Exception as e:
            raise DeliveryError(f"send failed: {e}") from e

    # =========================================================================
    # Expiry and teardown
    # =========================================================================

    async def _expiry_timer(self, session: LinkSession) -> None:
        """Expire the session at the end of its linking window."""
        await asyncio.sleep(max(0.0, session.expires_at - time.time()))
        if self._is_current(session):
            await self._registry.expire(session.session_id)

    def _on_terminated(self, session: LinkSession) -> None:
        self._broadcast.clear(session.session_id)

    def _remaining(self, session: LinkSession) -> float:
        """Seconds left in the session's linking window."""
        return max(0.0, session.expires_at - time.time())

    def _is_current(self, session: LinkSession) -> bool:
        """True while session is live and still the registered one."""
        return (
            not session.is_terminal
            and self._registry.get(session.session_id) is session
        )

    def _set_artifact(self, session: LinkSession, kind: str, value: str) -> None:
        artifact = PairingArtifact(session_id=session.session_id, kind=kind, value=value)
        session.artifact = artifact
        self._broadcast.publish(artifact)

    def _result(self, session: LinkSession, code: Optional[str] = None) -> LinkResult:
        return LinkResult(
            session_id=session.session_id,
            state=session.state,
            method=session.method,
            expires_at=session.expires_at,
            code=code,
        )
