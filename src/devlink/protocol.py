"""Contract toward the external messaging protocol client.

The protocol client performs the actual handshake. devlink only consumes
its event stream and issues two commands (request pairing code, send
document), plus the registration pre-check and close.
"""

import importlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Union

from devlink.credentials import ScopedCredentialStore
from devlink.errors import ConfigError

# Close status meaning the remote account rejected or logged out the device
AUTH_REJECTED_STATUS = 401


# ============================================================================
# Events
# ============================================================================


@dataclass(frozen=True)
class QrEvent:
    """New scannable-code value issued by the protocol client."""

    artifact: str


@dataclass(frozen=True)
class ConnectionOpen:
    """Remote account accepted the pairing artifact."""

    user_id: Optional[str] = None


@dataclass(frozen=True)
class ConnectionClose:
    """Connection closed, with the disconnect status if known."""

    status_code: Optional[int] = None
    reason: str = ""

    @property
    def is_auth_rejected(self) -> bool:
        """Permanent failure; never retried."""
        return self.status_code == AUTH_REJECTED_STATUS


@dataclass(frozen=True)
class CredsUpdated:
    """Credential material changed and must be persisted."""

    creds: dict[str, Any] = field(default_factory=dict)


ProtocolEvent = Union[QrEvent, ConnectionOpen, ConnectionClose, CredsUpdated]


# ============================================================================
# Client contract
# ============================================================================


@dataclass(frozen=True)
class ClientConfig:
    """Everything needed to construct one protocol client."""

    store: ScopedCredentialStore
    version: tuple[int, ...]
    browser: tuple[str, ...]


class ProtocolClient(Protocol):
    """Protocol for the messaging protocol client (one per session)."""

    def events(self) -> AsyncIterator[ProtocolEvent]:
        """Stream of connection events, in emission order.

        The iterator ends when the client is closed.
        """
        ...

    async def is_registered(self) -> bool:
        """True if the stored creds already belong to a linked account."""
        ...

    async def request_pairing_code(self, phone_number: str) -> str:
        """Ask the remote service for a textual pairing code."""
        ...

    async def send_document(
        self,
        target: str,
        data: bytes,
        file_name: str,
        mimetype: str,
        caption: str = "",
    ) -> None:
        """Send a document to an account identity."""
        ...

    async def close(self) -> None:
        """Close the connection. Must be idempotent."""
        ...


ProtocolClientFactory = Callable[[ClientConfig], ProtocolClient]


def load_client_factory(path: str | None) -> ProtocolClientFactory:
    """Resolve a "package.module:attribute" factory path.

    Args:
        path: Dotted path from config.

    Returns:
        The factory callable.

    Raises:
        ConfigError: If unset, malformed, or not importable.
    """
    if not path:
        raise ConfigError("protocol.client_factory is not configured")

    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Invalid client factory path: {path}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import {module_name}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{path} is not callable")
    return factory
