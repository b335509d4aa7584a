"""HTTP server for devlink.

Single aiohttp server handling all routes:
- /health - Health check
- /generate?number= - Pairing code for a number (legacy endpoint)
- /api/link - Start a linking session (code or QR)
- /api/link/{id} - Get/cancel linking status
- /qr/stream - Server-sent stream of pairing artifacts
"""

import logging
from typing import Optional

from aiohttp import web

from devlink.broadcast import BroadcastChannel
from devlink.config import Config
from devlink.credentials import CredentialStore
from devlink.errors import (
    DevlinkError,
    DuplicateSessionError,
    InvalidNumberError,
    PairingCodeError,
    SessionNotFoundError,
)
from devlink.linking import LinkingMethod, LinkOrchestrator, LinkResult
from devlink.linking.validation import sanitize_number
from devlink.protocol import ProtocolClientFactory
from devlink.sse import artifact_stream
from devlink.version import VersionFetcher

logger = logging.getLogger(__name__)

METHODS = {method.value: method for method in LinkingMethod}


class LinkServer:
    """HTTP front for the link orchestrator."""

    def __init__(
        self,
        orchestrator: LinkOrchestrator,
        broadcast: BroadcastChannel,
        heartbeat_seconds: float = 15.0,
    ):
        """Initialize server.

        Args:
            orchestrator: Orchestrator handling linking requests.
            broadcast: Channel backing the QR stream.
            heartbeat_seconds: Keepalive interval on the QR stream.
        """
        self.orchestrator = orchestrator
        self.broadcast = broadcast
        self.heartbeat_seconds = heartbeat_seconds

        self.app = web.Application()
        self._setup_routes()
        self.app.on_shutdown.append(self._on_shutdown)
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0

    @classmethod
    def from_config(
        cls, config: Config, client_factory: ProtocolClientFactory
    ) -> "LinkServer":
        """Build the server and its collaborators from configuration."""
        broadcast = BroadcastChannel(
            queue_size=config.broadcast.queue_size,
            code_group_size=config.linking.code_group_size,
        )
        orchestrator = LinkOrchestrator(
            client_factory=client_factory,
            credential_store=CredentialStore(config.auth_dir),
            broadcast=broadcast,
            version_fetcher=VersionFetcher(
                url=config.protocol.version_url,
                fallback=config.protocol.fallback_version,
                timeout=config.protocol.version_timeout,
            ),
            config=config.linking,
            browser=tuple(config.protocol.browser),
        )
        return cls(orchestrator, broadcast, config.broadcast.heartbeat_seconds)

    def _setup_routes(self) -> None:
        """Set up all HTTP routes."""
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/generate", self._handle_generate)
        self.app.router.add_post("/api/link", self._handle_start_link)
        self.app.router.add_get("/api/link/{session_id}", self._handle_link_status)
        self.app.router.add_delete("/api/link/{session_id}", self._handle_cancel_link)
        self.app.router.add_get("/qr/stream", self._handle_qr_stream)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK")

    async def _handle_generate(self, request: web.Request) -> web.Response:
        """Pairing code for ?number=, with separators stripped."""
        raw = request.query.get("number")
        if not raw:
            return web.json_response({"error": "Missing number"}, status=400)

        try:
            result = await self.orchestrator.start_linking(
                sanitize_number(raw), LinkingMethod.PAIRING_CODE
            )
        except DevlinkError as e:
            return self._error_response(e)

        if result.code is None:
            return self._state_error(result)
        return web.json_response({"code": result.code})

    async def _handle_start_link(self, request: web.Request) -> web.Response:
        """Start a linking session from a JSON body."""
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON"}, status=400)

        number = body.get("number")
        method_name = body.get("method", LinkingMethod.PAIRING_CODE.value)
        method = METHODS.get(method_name) if isinstance(method_name, str) else None
        if method is None:
            return web.json_response({"error": "Unknown method"}, status=400)

        try:
            result = await self.orchestrator.start_linking(number, method)
        except DevlinkError as e:
            return self._error_response(e)

        if method is LinkingMethod.PAIRING_CODE and result.code is None:
            return self._state_error(result)

        payload = {
            "session_id": result.session_id,
            "state": result.state.value,
            "method": result.method.value,
            "expires_at": result.expires_at,
        }
        if result.code is not None:
            payload["code"] = result.code
        if method is LinkingMethod.SCANNABLE_CODE:
            payload["stream"] = "/qr/stream"
        return web.json_response(payload)

    async def _handle_link_status(self, request: web.Request) -> web.Response:
        """Get linking session status."""
        session_id = request.match_info["session_id"]

        status = self.orchestrator.get_status(session_id)
        if status is None:
            return web.json_response({"error": "Session not found"}, status=404)

        return web.json_response({
            "session_id": status.session_id,
            "state": status.state.value,
            "method": status.method.value,
            "expires_at": status.expires_at,
            "reason": status.reason,
        })

    async def _handle_cancel_link(self, request: web.Request) -> web.Response:
        """Cancel a linking session."""
        session_id = request.match_info["session_id"]

        try:
            await self.orchestrator.cancel(session_id)
        except SessionNotFoundError as e:
            return self._error_response(e)

        logger.info(f"Linking session cancelled: {session_id[:8]}...")
        return web.json_response({"status": "cancelled"})

    async def _handle_qr_stream(self, request: web.Request) -> web.StreamResponse:
        """Stream pairing artifacts as server-sent events."""
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)

        subscriber = self.broadcast.subscribe()
        try:
            async for chunk in artifact_stream(subscriber, self.heartbeat_seconds):
                await response.write(chunk)
        except ConnectionResetError:
            logger.debug(f"QR stream subscriber {subscriber.subscriber_id} went away")
        finally:
            self.broadcast.unsubscribe(subscriber)

        return response

    def _error_response(self, error: DevlinkError) -> web.Response:
        """Map a linking error to an HTTP response."""
        if isinstance(error, InvalidNumberError):
            return web.json_response({"error": str(error)}, status=400)
        if isinstance(error, DuplicateSessionError):
            return web.json_response({"error": str(error)}, status=409)
        if isinstance(error, SessionNotFoundError):
            return web.json_response({"error": "Session not found"}, status=404)
        if isinstance(error, PairingCodeError):
            return web.json_response(
                {"error": "Failed to generate pairing code"}, status=500
            )
        logger.error(f"Linking error: {error}")
        return web.json_response({"error": "Internal error"}, status=500)

    def _state_error(self, result: LinkResult) -> web.Response:
        """Session finished before a code was issued."""
        status = self.orchestrator.get_status(result.session_id)
        state = status.state if status else result.state
        return web.json_response(
            {
                "error": f"Session {state.value}",
                "session_id": result.session_id,
                "state": state.value,
                "reason": status.reason if status else None,
            },
            status=409,
        )

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to (0 for random).

        Returns:
            App runner for cleanup.
        """
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        if self._site._server and self._site._server.sockets:
            self._port = self._site._server.sockets[0].getsockname()[1]
        else:
            self._port = port

        logger.info(f"Server started on {host}:{self._port}")
        return self._runner

    async def _on_shutdown(self, app: web.Application) -> None:
        """End open QR streams so graceful shutdown does not wait on them."""
        self.broadcast.close()

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def close(self) -> None:
        """Tear down sessions, disconnect subscribers, and stop server."""
        await self.orchestrator.shutdown()
        self.broadcast.close()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Server closed")
