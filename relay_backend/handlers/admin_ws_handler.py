import json
import logging
from typing import Any, Dict, Optional

import tornado.ioloop
import tornado.websocket
from pydantic import BaseModel, TypeAdapter, ValidationError

from relay_backend.errors import RelayError
from relay_backend.models.messages import (
    AdminEmergencyStopRequest,
    AdminRelayCommandRequest,
    AdminRequest,
    AdminSetRelayRequest,
    ConnectedRelayEntry,
    ConnectedRelaysMessage,
    ErrorMessage,
    GetConnectedRelaysRequest,
    RelayCommandResultMessage,
    RelayCommandSentMessage,
    RelayConnectionMessage,
)
from relay_backend.models.records import ConnectedRelay
from relay_backend.services.command_router import CommandRouter
from relay_backend.services.jwt_service import AdminAuthError, JWTAuthService
from relay_backend.services.relay_registry import RegistryEvent, RelayRegistry

logger = logging.getLogger(__name__)

_admin_request_adapter: TypeAdapter = TypeAdapter(AdminRequest)


def connected_entry(relay: ConnectedRelay, status: str = "connected") -> ConnectedRelayEntry:
    return ConnectedRelayEntry(
        id=relay.identity,
        name=relay.config_name,
        mac=relay.identity,
        ip=relay.ip,
        status=status,
        lastSeen=relay.last_heartbeat.isoformat(),
        capabilities=relay.capabilities,
        states=relay.states,
    )


async def broadcast(state: Dict[str, Any], message: BaseModel) -> None:
    """Send one message to every connected admin client, dropping closed ones."""
    payload = message.model_dump_json()
    for client in list(state["admin_clients"]):
        try:
            await client.write_message(payload)
        except tornado.websocket.WebSocketClosedError:
            state["admin_clients"].discard(client)


def make_connection_broadcaster(state: Dict[str, Any], registry: RelayRegistry):
    """Registry listener forwarding connect/disconnect events to admin clients."""

    async def on_registry_event(event: RegistryEvent) -> None:
        configuration = await registry.configuration_for(event.identity)
        entry = connected_entry(
            event.session.snapshot(configuration),
            status="connected" if event.kind == "connected" else "disconnected",
        )
        await broadcast(state, RelayConnectionMessage(type=f"relay_{event.kind}", relay=entry))

    return on_registry_event


class AdminWebSocketHandler(tornado.websocket.WebSocketHandler):
    def initialize(
        self,
        registry: RelayRegistry,
        router: CommandRouter,
        state: Dict[str, Any],
        jwt_service: JWTAuthService,
    ):
        self.registry = registry
        self.router = router
        self.state = state
        self.jwt_service = jwt_service
        self.jwt_payload: Dict[str, Any] | None = None

    def check_origin(self, origin: str) -> bool:
        # Allow cross-origin WebSocket connections (lock down in production).
        return True

    def open(self):
        try:
            self.jwt_payload = self.jwt_service.authenticate(
                self.request.headers.get("Authorization"),
                self.get_argument("token", default=None),
            )
        except AdminAuthError as exc:
            self.close(code=exc.close_code, reason=exc.reason)
            return
        self.state["admin_clients"].add(self)

    async def on_message(self, message: str):
        if self.jwt_payload is None:
            return
        try:
            payload = json.loads(message)
        except json.JSONDecodeError:
            await self._reply(ErrorMessage(code="malformed_request", message="message is not valid JSON"))
            return
        try:
            request = _admin_request_adapter.validate_python(payload)
        except ValidationError as exc:
            await self._reply(ErrorMessage(code="invalid_request", message=str(exc)))
            return

        if isinstance(request, GetConnectedRelaysRequest):
            await self._handle_request(request)
        else:
            # Device commands may wait seconds for an acknowledgement; an emergency
            # stop sent afterwards on this socket must not queue behind them.
            tornado.ioloop.IOLoop.current().spawn_callback(self._handle_request, request)

    async def _handle_request(self, request: BaseModel) -> None:
        device_id: Optional[str] = getattr(request, "device_id", None)
        try:
            reply = await self._execute_request(request)
        except RelayError as exc:
            logger.warning("Admin command for %s failed: %s", device_id, exc)
            reply = ErrorMessage(code=exc.code, message=str(exc), device_id=device_id)
        await self._reply(reply)

    async def _execute_request(self, request: BaseModel) -> BaseModel:
        if isinstance(request, GetConnectedRelaysRequest):
            relays = [connected_entry(relay) for relay in await self.registry.list_connected()]
            return ConnectedRelaysMessage(count=len(relays), relays=relays)

        if isinstance(request, AdminSetRelayRequest):
            ack = await self.router.send_logical_command(request.device_id, request.relay, request.state)
            return RelayCommandSentMessage(
                device_id=ack.identity,
                relay=request.relay,
                state=request.state,
                acknowledged=ack.acknowledged,
            )

        if isinstance(request, AdminRelayCommandRequest):
            ack = await self.router.send_raw_command(request.device_id, request.command)
        elif isinstance(request, AdminEmergencyStopRequest):
            ack = await self.router.emergency_stop(request.device_id)
        else:
            raise TypeError(f"unhandled admin request {type(request).__name__}")
        return RelayCommandResultMessage(
            device_id=ack.identity,
            command=ack.command,
            acknowledged=ack.acknowledged,
            reply=ack.reply,
        )

    async def _reply(self, message: BaseModel) -> None:
        try:
            await self.write_message(message.model_dump_json())
        except tornado.websocket.WebSocketClosedError:
            self.state["admin_clients"].discard(self)

    def on_close(self):
        self.state["admin_clients"].discard(self)
