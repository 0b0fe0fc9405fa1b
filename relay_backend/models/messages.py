import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from relay_backend.errors import InvalidCommand, MalformedFrame


# Device -> server frames


class RelayInfoFrame(BaseModel):
    """Device self-description, sent on connect and on `get_relay_info`."""

    model_config = ConfigDict(extra="allow")

    type: Literal["relay_info"] = "relay_info"
    relay_id: Optional[str] = Field(default=None, description="Firmware-configured relay id.")
    relay_name: Optional[str] = Field(default=None, description="Firmware-configured display name.")
    relay_type: Optional[str] = Field(default=None, description="Relay board type, e.g. 'elevator'.")
    webSocket_port: Optional[int] = Field(default=None, description="Port of the device's own WebSocket server.")
    num_relays: Optional[int] = Field(default=None, description="Number of physical relays on the board.")
    capabilities: List[str] = Field(default_factory=list, description="Capabilities, e.g. ['door_control'].")
    relay_names: List[str] = Field(default_factory=list, description="Relay names the firmware accepts.")


class StatusFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["status"] = "status"
    relay_id: Optional[str] = None
    wifi_connected: Optional[bool] = Field(default=None, description="Whether the board is on WiFi.")
    ip_address: Optional[str] = Field(default=None, description="Board IP address on the local network.")
    uptime: Optional[int] = Field(default=None, description="Milliseconds since boot.")


class RelayStateFrame(BaseModel):
    """Full relay state report; also the acknowledgement of relay commands."""

    model_config = ConfigDict(extra="allow")

    type: Literal["relay_state", "relay_states"] = "relay_state"
    relay_id: Optional[str] = None
    states: Dict[str, bool] = Field(default_factory=dict, description="Relay name -> energized.")


class HeartbeatFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["heartbeat"] = "heartbeat"
    relay_id: Optional[str] = None
    uptime: Optional[int] = None


class PongFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["pong"] = "pong"
    relay_id: Optional[str] = None
    timestamp: Optional[int] = None


class DeviceRegisterFrame(BaseModel):
    """Registration announcement used by newer firmware (`register`) and older (`device_register`)."""

    model_config = ConfigDict(extra="allow")

    type: Literal["device_register", "register"] = "device_register"
    device_name: Optional[str] = None
    mac: Optional[str] = None
    mac_address: Optional[str] = None
    ip: Optional[str] = None


class DeviceErrorFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["error"] = "error"
    error: Optional[str] = None


class DeviceRequestFrame(BaseModel):
    """Requests some firmware revisions echo to the server; accepted and ignored."""

    model_config = ConfigDict(extra="allow")

    type: Literal["get_relay_info", "get_status"]


DeviceFrame = Union[
    RelayInfoFrame,
    StatusFrame,
    RelayStateFrame,
    HeartbeatFrame,
    PongFrame,
    DeviceRegisterFrame,
    DeviceErrorFrame,
    DeviceRequestFrame,
]

_DEVICE_FRAMES = {
    "relay_info": RelayInfoFrame,
    "status": StatusFrame,
    "relay_state": RelayStateFrame,
    "relay_states": RelayStateFrame,
    "heartbeat": HeartbeatFrame,
    "pong": PongFrame,
    "device_register": DeviceRegisterFrame,
    "register": DeviceRegisterFrame,
    "error": DeviceErrorFrame,
    "get_relay_info": DeviceRequestFrame,
    "get_status": DeviceRequestFrame,
}


def parse_device_frame(message: Union[str, bytes]) -> Optional[DeviceFrame]:
    """
    Parse one device message.

    Returns None for well-formed frames of a type this server does not handle;
    raises MalformedFrame for anything that is not a JSON object with a known shape.
    """
    try:
        payload = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
        raise MalformedFrame(f"frame is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        raise MalformedFrame("frame must be a JSON object with a string 'type'")

    model = _DEVICE_FRAMES.get(payload["type"])
    if model is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedFrame(f"invalid {payload['type']} frame: {exc}") from exc


# Server -> device commands


class SetRelayCommand(BaseModel):
    """Named (or indexed) relay command understood by name-based firmware."""

    type: Literal["set_relay"] = "set_relay"
    relay: Union[int, str] = Field(..., description="Relay name or physical index.")
    state: bool


class RelayControlCommand(BaseModel):
    """Indexed relay command used by bit-position firmware."""

    type: Literal["relay_control"] = "relay_control"
    relay: int = Field(..., ge=0, description="Physical relay index (bit position).")
    state: bool


class EmergencyStopCommand(BaseModel):
    type: Literal["emergency_stop"] = "emergency_stop"


class GetRelayInfoCommand(BaseModel):
    type: Literal["get_relay_info"] = "get_relay_info"


class GetStatusCommand(BaseModel):
    type: Literal["get_status"] = "get_status"


class PingCommand(BaseModel):
    type: Literal["ping"] = "ping"


class RelayChannel(BaseModel):
    bitPosition: int
    function: str
    enabled: bool = True
    inputPin: int = -1
    safetyRequired: bool = False


class ConfigMessage(BaseModel):
    """Channel layout pushed to a device whose configuration is known."""

    type: Literal["config"] = "config"
    device_id: str
    device_name: str
    num_relays: int = 8
    relays: List[RelayChannel] = Field(default_factory=list)


ServerCommand = Annotated[
    Union[
        SetRelayCommand,
        RelayControlCommand,
        EmergencyStopCommand,
        GetRelayInfoCommand,
        GetStatusCommand,
        PingCommand,
        ConfigMessage,
    ],
    Field(discriminator="type"),
]

_server_command_adapter: TypeAdapter = TypeAdapter(ServerCommand)


def parse_server_command(payload: Any):
    try:
        return _server_command_adapter.validate_python(payload)
    except ValidationError as exc:
        raise InvalidCommand(f"invalid device command: {exc}") from exc


class CommandAck(BaseModel):
    """Outcome of a command the device acknowledged (or that needed no reply)."""

    identity: str
    command: str = Field(..., description="Wire type of the command that was sent.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Exact JSON object written to the device.")
    acknowledged: bool = Field(default=True, description="False for commands that expect no reply.")
    reply: Optional[Dict[str, Any]] = Field(default=None, description="Frame that completed the command.")


# Administrative surface (admin WebSocket)


class ConnectedRelayEntry(BaseModel):
    id: str
    name: Optional[str] = None
    mac: str
    ip: Optional[str] = None
    status: Literal["connected", "disconnected"] = "connected"
    lastSeen: Optional[str] = Field(default=None, description="ISO8601 time of the last frame.")
    capabilities: List[str] = Field(default_factory=list)
    states: Dict[str, bool] = Field(default_factory=dict)


class GetConnectedRelaysRequest(BaseModel):
    type: Literal["get_connected_relays"] = "get_connected_relays"
    request: Optional[str] = "list"


class AdminSetRelayRequest(BaseModel):
    type: Literal["set_relay"] = "set_relay"
    device_id: str = Field(..., description="MAC address, device id or configuration name.")
    relay: Union[int, str]
    state: bool


class AdminRelayCommandRequest(BaseModel):
    type: Literal["relay_command"] = "relay_command"
    device_id: str
    command: Dict[str, Any] = Field(..., description="Raw device command, e.g. {'type': 'get_status'}.")


class AdminEmergencyStopRequest(BaseModel):
    type: Literal["emergency_stop"] = "emergency_stop"
    device_id: str


AdminRequest = Annotated[
    Union[
        GetConnectedRelaysRequest,
        AdminSetRelayRequest,
        AdminRelayCommandRequest,
        AdminEmergencyStopRequest,
    ],
    Field(discriminator="type"),
]


class ConnectedRelaysMessage(BaseModel):
    type: Literal["connected_relays"] = "connected_relays"
    count: int = 0
    relays: List[ConnectedRelayEntry] = Field(default_factory=list)


class RelayCommandSentMessage(BaseModel):
    type: Literal["relay_command_sent"] = "relay_command_sent"
    device_id: str
    relay: Union[int, str]
    state: bool
    acknowledged: bool = True


class RelayCommandResultMessage(BaseModel):
    type: Literal["relay_command_result"] = "relay_command_result"
    device_id: str
    command: str
    acknowledged: bool = True
    reply: Optional[Dict[str, Any]] = None


class RelayConnectionMessage(BaseModel):
    """Broadcast to admin clients when a device connects or drops."""

    type: Literal["relay_connected", "relay_disconnected"]
    relay: ConnectedRelayEntry


class RelayStateMessage(BaseModel):
    type: Literal["relay_state"] = "relay_state"
    mac: str
    states: Dict[str, bool] = Field(default_factory=dict)


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str
    device_id: Optional[str] = None


class SchemaDocument(BaseModel):
    """Documentation payload served at /docs for quick reference."""

    websocket_endpoints: Dict[str, str]
    device_inbound_messages: Dict[str, Dict[str, Any]]
    device_outbound_messages: Dict[str, Dict[str, Any]]
    admin_messages: Dict[str, Dict[str, Any]]
    examples: Dict[str, Any] = Field(default_factory=dict)
    notes: List[str] = []
