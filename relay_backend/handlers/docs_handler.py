import tornado.web

from relay_backend.models.messages import (
    AdminEmergencyStopRequest,
    AdminRelayCommandRequest,
    AdminSetRelayRequest,
    ConfigMessage,
    ConnectedRelaysMessage,
    DeviceRegisterFrame,
    ErrorMessage,
    GetConnectedRelaysRequest,
    HeartbeatFrame,
    RelayCommandResultMessage,
    RelayCommandSentMessage,
    RelayConnectionMessage,
    RelayControlCommand,
    RelayInfoFrame,
    RelayStateFrame,
    RelayStateMessage,
    SchemaDocument,
    SetRelayCommand,
    StatusFrame,
)


class DocsHandler(tornado.web.RequestHandler):
    def get(self):
        relay_info_example = {
            "type": "relay_info",
            "relay_id": "AA:BB:CC:DD:EE:01",
            "relay_name": "Elevator A",
            "relay_type": "elevator",
            "webSocket_port": 81,
            "num_relays": 8,
            "capabilities": ["door_control", "floor_select"],
            "relay_names": ["doorOpen", "doorClose", "floor1", "floor2"],
        }

        config_example = {
            "type": "config",
            "device_id": "AA:BB:CC:DD:EE:01",
            "device_name": "Elevator A",
            "num_relays": 8,
            "relays": [
                {"bitPosition": 0, "function": "doorOpen", "enabled": True},
                {"bitPosition": 1, "function": "doorClose", "enabled": True},
                {"bitPosition": 2, "function": "unused_2", "enabled": False},
            ],
        }

        schema = SchemaDocument(
            websocket_endpoints={
                "relay": "/ws/relay?id=<mac>",
                "admin": "/ws/admin",
            },
            device_inbound_messages={
                "RelayInfoFrame": RelayInfoFrame.model_json_schema(),
                "StatusFrame": StatusFrame.model_json_schema(),
                "RelayStateFrame": RelayStateFrame.model_json_schema(),
                "HeartbeatFrame": HeartbeatFrame.model_json_schema(),
                "DeviceRegisterFrame": DeviceRegisterFrame.model_json_schema(),
            },
            device_outbound_messages={
                "SetRelayCommand": SetRelayCommand.model_json_schema(),
                "RelayControlCommand": RelayControlCommand.model_json_schema(),
                "ConfigMessage": ConfigMessage.model_json_schema(),
            },
            admin_messages={
                "GetConnectedRelaysRequest": GetConnectedRelaysRequest.model_json_schema(),
                "AdminSetRelayRequest": AdminSetRelayRequest.model_json_schema(),
                "AdminRelayCommandRequest": AdminRelayCommandRequest.model_json_schema(),
                "AdminEmergencyStopRequest": AdminEmergencyStopRequest.model_json_schema(),
                "ConnectedRelaysMessage": ConnectedRelaysMessage.model_json_schema(),
                "RelayCommandSentMessage": RelayCommandSentMessage.model_json_schema(),
                "RelayCommandResultMessage": RelayCommandResultMessage.model_json_schema(),
                "RelayConnectionMessage": RelayConnectionMessage.model_json_schema(),
                "RelayStateMessage": RelayStateMessage.model_json_schema(),
                "ErrorMessage": ErrorMessage.model_json_schema(),
            },
            examples={
                "relay_info": relay_info_example,
                "config": config_example,
                "set_relay": {"type": "set_relay", "device_id": "Elevator A", "relay": "doorOpen", "state": True},
            },
            notes=[
                "All WebSocket messages are JSON objects with a 'type' field.",
                "Devices are identified by the 'id' query parameter; MAC addresses are matched case-insensitively.",
                "A device that reconnects replaces its previous session, which is closed with code 4000.",
                "Devices silent for longer than RELAY_HEARTBEAT_TIMEOUT seconds are dropped with code 4008.",
                "Admin authentication: provide Bearer token via 'Authorization: Bearer <token>' header or '?token=' query param on WebSocket connect.",
            ],
        )
        self.set_header("Content-Type", "application/json")
        self.write(schema.model_dump(mode="json"))
