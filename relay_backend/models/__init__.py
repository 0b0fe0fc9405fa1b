"""Pydantic models for device frames, admin messages and stored records."""

from .identity import normalize_identity
from .messages import (
    AdminRequest,
    CommandAck,
    ConfigMessage,
    ConnectedRelayEntry,
    ConnectedRelaysMessage,
    DeviceFrame,
    EmergencyStopCommand,
    ErrorMessage,
    GetRelayInfoCommand,
    RelayControlCommand,
    RelayInfoFrame,
    RelayStateFrame,
    SchemaDocument,
    SetRelayCommand,
    parse_device_frame,
    parse_server_command,
)
from .records import (
    ConnectedRelay,
    DispatchOutcome,
    DispatchRecord,
    DispatchResult,
    RecurringTaskDefinition,
    RelayConfiguration,
)

__all__ = [
    "normalize_identity",
    "AdminRequest",
    "CommandAck",
    "ConfigMessage",
    "ConnectedRelayEntry",
    "ConnectedRelaysMessage",
    "DeviceFrame",
    "EmergencyStopCommand",
    "ErrorMessage",
    "GetRelayInfoCommand",
    "RelayControlCommand",
    "RelayInfoFrame",
    "RelayStateFrame",
    "SchemaDocument",
    "SetRelayCommand",
    "parse_device_frame",
    "parse_server_command",
    "ConnectedRelay",
    "DispatchOutcome",
    "DispatchRecord",
    "DispatchResult",
    "RecurringTaskDefinition",
    "RelayConfiguration",
]
