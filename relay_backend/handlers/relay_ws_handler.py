import logging
from typing import Any, Dict

import tornado.ioloop
import tornado.websocket

from relay_backend.errors import MalformedFrame, RelayError
from relay_backend.handlers.admin_ws_handler import broadcast
from relay_backend.models.identity import normalize_identity
from relay_backend.models.messages import (
    ConfigMessage,
    DeviceRequestFrame,
    GetRelayInfoCommand,
    RelayChannel,
    RelayStateFrame,
    RelayStateMessage,
    parse_device_frame,
)
from relay_backend.services.device_session import DeviceSession
from relay_backend.services.relay_registry import RelayRegistry

logger = logging.getLogger(__name__)


class RelayWebSocketHandler(tornado.websocket.WebSocketHandler):
    """Device-facing socket: one connection per relay board, identified by `?id=<mac>`."""

    def initialize(self, registry: RelayRegistry, state: Dict[str, Any]):
        self.registry = registry
        self.state = state
        self.session: DeviceSession | None = None

    def check_origin(self, origin: str) -> bool:
        return True

    async def open(self):
        raw_identity = self.get_argument("id", default=None) or self.get_argument("mac", default=None)
        try:
            identity = normalize_identity(raw_identity)
        except ValueError:
            self.close(code=1008, reason="missing device id")
            return

        self.session = await self.registry.register_session(identity, self, ip=self.request.remote_ip)
        try:
            await self._push_configuration()
            await self.session.send(GetRelayInfoCommand())
        except RelayError as exc:
            logger.warning("Could not greet relay %s: %s", identity, exc)

    async def _push_configuration(self):
        configuration = await self.registry.configuration_for(self.session.identity)
        if configuration is None:
            logger.info("Relay %s has no active configuration", self.session.identity)
            return
        message = ConfigMessage(
            device_id=configuration.relay_id,
            device_name=configuration.relay_name,
            num_relays=configuration.num_relays,
            relays=[RelayChannel(**channel) for channel in configuration.channel_layout()],
        )
        await self.session.send(message)

    async def on_message(self, message):
        session = self.session
        if session is None or session.closed:
            return
        try:
            frame = parse_device_frame(message)
        except MalformedFrame as exc:
            session.touch()
            logger.warning("Dropping malformed frame from %s: %s", session.identity, exc)
            return
        if frame is None:
            session.touch()
            logger.info("Ignoring unsupported frame from %s", session.identity)
            return

        session.handle_frame(frame)
        if isinstance(frame, RelayStateFrame):
            await broadcast(self.state, RelayStateMessage(mac=session.identity, states=frame.states))
        elif isinstance(frame, DeviceRequestFrame):
            logger.debug("Relay %s sent %s request; ignored", session.identity, frame.type)

    def on_close(self):
        session = self.session
        if session is None:
            return
        tornado.ioloop.IOLoop.current().spawn_callback(
            self.registry.unregister_session,
            session.identity,
            session,
            self.close_code or 1000,
            self.close_reason or "connection closed",
        )
