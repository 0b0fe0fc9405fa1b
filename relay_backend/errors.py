class RelayError(Exception):
    """Base class for per-device failures surfaced to command callers."""

    code = "relay_error"

    def __init__(self, message: str, identity: str | None = None):
        super().__init__(message)
        self.identity = identity


class DeviceOffline(RelayError):
    """No live session exists for the resolved identity."""

    code = "device_offline"


class DeviceNotFound(DeviceOffline):
    """Target matches neither a configuration nor a connected device."""

    code = "device_not_found"


class UnknownRelay(RelayError):
    code = "unknown_relay"


class CommandTimeout(RelayError):
    """Command was sent but no acknowledgement arrived in time.

    The outcome is ambiguous: the device may still have applied it.
    """

    code = "timeout"


class InvalidCommand(RelayError):
    code = "invalid_command"


class MalformedFrame(RelayError):
    code = "malformed_frame"
