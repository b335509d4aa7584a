"""Scoped credential storage for linking sessions.

This module provides:
- CredentialStore: Root directory holding one namespace per session
- ScopedCredentialStore: One session's auth material

Security features:
- File permissions (600 for files, 700 for directories)
- Session ID and key name validation (prevent path traversal)
- Atomic writes (temp file + fsync + rename)
"""

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

from devlink.errors import NotReadyError, StorageError

__all__ = [
    "CREDS_FILE_NAME",
    "CredentialStore",
    "ScopedCredentialStore",
]

logger = logging.getLogger(__name__)

CREDS_FILE_NAME = "creds.json"

# Valid session ID / key name pattern: alphanumeric, dots, hyphens, underscores
NAME_PATTERN = re.compile(r"[a-zA-Z0-9_.-]+")


def _validate_name(name: str, kind: str) -> None:
    if not NAME_PATTERN.fullmatch(name) or name in (".", ".."):
        raise StorageError(f"Invalid {kind}: {name}")


def _write_private(path: Path, data: bytes) -> None:
    """Write file atomically, readable by owner only."""
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, data)
        os.fsync(fd)
    finally:
        os.close(fd)
    os.replace(tmp_path, path)


class ScopedCredentialStore:
    """Credential namespace owned by exactly one linking session.

    The protocol client reads and writes its key material here; the
    durable credential bundle is the creds file.

    Attributes:
        session_id: Owning session.
        directory: Namespace directory.
    """

    def __init__(self, session_id: str, directory: Path) -> None:
        self.session_id = session_id
        self.directory = directory
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        """True once the namespace has been removed."""
        return self._destroyed

    def _check_alive(self) -> None:
        if self._destroyed:
            raise StorageError(f"Store destroyed: {self.session_id[:8]}...")

    def on_update(self, creds: dict[str, Any]) -> None:
        """Persist updated credential material.

        Called whenever the protocol client reports new creds. Returns
        only after the data is on disk.

        Args:
            creds: JSON-serializable credential material.

        Raises:
            StorageError: If the store was destroyed.
        """
        self._check_alive()
        data = json.dumps(creds, indent=2).encode()
        _write_private(self.directory / CREDS_FILE_NAME, data)
        logger.debug(f"Credentials persisted for {self.session_id[:8]}...")

    def write(self, name: str, data: bytes) -> None:
        """Persist a named key file.

        Raises:
            StorageError: If the name is invalid or the store was destroyed.
        """
        self._check_alive()
        _validate_name(name, "key name")
        _write_private(self.directory / name, data)

    def read(self, name: str) -> bytes | None:
        """Read a named key file, or None if absent."""
        self._check_alive()
        _validate_name(name, "key name")
        path = self.directory / name
        if not path.exists():
            return None
        return path.read_bytes()

    def read_bundle(self) -> bytes:
        """Read the durable credential bundle.

        Returns:
            Raw bytes of the creds file.

        Raises:
            NotReadyError: If the handshake has not produced a bundle yet.
            StorageError: If the store was destroyed.
        """
        self._check_alive()
        path = self.directory / CREDS_FILE_NAME
        if not path.exists():
            raise NotReadyError(
                f"Credential bundle not ready for {self.session_id[:8]}..."
            )
        return path.read_bytes()

    def destroy(self) -> None:
        """Remove the namespace. Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        shutil.rmtree(self.directory, ignore_errors=True)
        logger.debug(f"Credential namespace removed: {self.session_id[:8]}...")


class CredentialStore:
    """Root of all per-session credential namespaces.

    Attributes:
        root: Directory holding one subdirectory per session.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def open(self, session_id: str) -> ScopedCredentialStore:
        """Create or reuse the namespace for a session.

        Args:
            session_id: Owning session ID.

        Returns:
            Scoped store for the session.

        Raises:
            StorageError: If the session ID is invalid or the directory
                cannot be created.
        """
        _validate_name(session_id, "session ID")
        directory = self.root / session_id
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            directory.mkdir(exist_ok=True)
            os.chmod(directory, 0o700)
        except OSError as e:
            raise StorageError(f"Cannot create credential namespace: {e}") from e
        return ScopedCredentialStore(session_id, directory)

    def exists(self, session_id: str) -> bool:
        """Check whether a namespace directory exists."""
        _validate_name(session_id, "session ID")
        return (self.root / session_id).is_dir()
