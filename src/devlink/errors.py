"""Base exceptions for devlink."""


class DevlinkError(Exception):
    """Base exception for all devlink errors."""

    pass


class ConfigError(DevlinkError):
    """Configuration is missing or invalid."""

    pass


class InvalidNumberError(DevlinkError):
    """Phone number failed the format check."""

    pass


class DuplicateSessionError(DevlinkError):
    """An active linking session already exists for the number."""

    pass


class SessionNotFoundError(DevlinkError):
    """No linking session with the given ID."""

    pass


class PairingCodeError(DevlinkError):
    """Protocol client did not produce a usable pairing code."""

    pass


class DeliveryError(DevlinkError):
    """Credential bundle could not be delivered."""

    pass


class StorageError(DevlinkError):
    """Credential storage operation error."""

    pass


class NotReadyError(StorageError):
    """Credential bundle not materialized yet (handshake incomplete)."""

    pass
