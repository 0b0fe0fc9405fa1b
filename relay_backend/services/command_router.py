import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from relay_backend.errors import CommandTimeout, UnknownRelay
from relay_backend.models.messages import (
    CommandAck,
    EmergencyStopCommand,
    RelayControlCommand,
    SetRelayCommand,
    parse_server_command,
)
from relay_backend.models.records import RelayConfiguration
from relay_backend.services.device_session import DeviceSession, acknowledgement_for
from relay_backend.services.relay_registry import RelayRegistry

logger = logging.getLogger(__name__)

DOOR_PULSE_SECONDS = 1.0
FLOOR_PULSE_SECONDS = 0.5


@dataclass(frozen=True)
class RelayTarget:
    """A relay resolved to its physical index, plus the device's own name for it when known."""

    index: int
    name: Optional[str] = None


def resolve_relay(
    session: DeviceSession,
    configuration: Optional[RelayConfiguration],
    relay: Union[int, str],
) -> RelayTarget:
    """
    Map a logical relay name to a physical index.

    Lookup order: the configuration's mapping, then a raw index (for boards still
    being commissioned), then a name the firmware itself declared in relay_info.
    """
    if isinstance(relay, bool):
        raise UnknownRelay(f"invalid relay {relay!r}", session.identity)

    if configuration is not None and isinstance(relay, str):
        index = configuration.relay_index(relay)
        if index is not None:
            return RelayTarget(index, _declared_name(session, index))

    num_relays = configuration.num_relays if configuration is not None else session.num_relays
    raw = relay.strip() if isinstance(relay, str) else relay
    if isinstance(raw, int) or (isinstance(raw, str) and raw.isdigit()):
        index = int(raw)
        if 0 <= index < num_relays:
            return RelayTarget(index, _declared_name(session, index))
        raise UnknownRelay(f"relay index {index} is outside 0..{num_relays - 1}", session.identity)

    if raw in session.relay_names:
        return RelayTarget(session.relay_names.index(raw), raw)
    raise UnknownRelay(f"relay '{relay}' is not configured for {session.identity}", session.identity)


def _declared_name(session: DeviceSession, index: int) -> Optional[str]:
    if index < len(session.relay_names):
        return session.relay_names[index]
    return None


def encode_relay_command(
    target: RelayTarget,
    state: bool,
    session: DeviceSession,
    configuration: Optional[RelayConfiguration],
) -> BaseModel:
    """Pick the wire form the device understands for one relay state change."""
    if configuration is not None:
        wire_format = configuration.command_format
    elif target.name and target.name in session.relay_names:
        wire_format = "set_relay"
    else:
        wire_format = "relay_control"

    if wire_format == "relay_control":
        return RelayControlCommand(relay=target.index, state=state)
    if target.name and target.name in session.relay_names:
        return SetRelayCommand(relay=target.name, state=state)
    return SetRelayCommand(relay=target.index, state=state)


class CommandRouter:
    """Turns logical relay commands into device commands on the right session."""

    def __init__(self, registry: RelayRegistry, command_timeout: Optional[float] = None):
        self.registry = registry
        if command_timeout is None:
            command_timeout = float(os.getenv("RELAY_COMMAND_TIMEOUT", "5"))
        self.command_timeout = command_timeout

    async def send_logical_command(
        self, target: str, relay_name: Union[int, str], desired_state: bool
    ) -> CommandAck:
        session = await self.registry.resolve(target)
        configuration = await self.registry.configuration_for(session.identity)
        relay = resolve_relay(session, configuration, relay_name)
        command = encode_relay_command(relay, desired_state, session, configuration)
        logger.info(
            "Relay %s: %s (channel %s) -> %s",
            session.identity,
            relay_name,
            relay.index,
            "ON" if desired_state else "OFF",
        )
        ack_name = relay.name
        if ack_name is None and isinstance(relay_name, str) and not relay_name.strip().isdigit():
            ack_name = relay_name
        return await session.submit(
            command, acknowledgement_for(command, ack_name), self.command_timeout
        )

    async def send_raw_command(self, target: str, command_payload: Union[Dict[str, Any], BaseModel]) -> CommandAck:
        if isinstance(command_payload, BaseModel):
            command = command_payload
        else:
            command = parse_server_command(command_payload)
        session = await self.registry.resolve(target)
        acknowledge = acknowledgement_for(command, relay_names=session.relay_names)
        if isinstance(command, EmergencyStopCommand):
            logger.warning("Emergency stop sent to relay %s", session.identity)
            return await session.send_immediate(command, acknowledge, self.command_timeout)
        return await session.submit(command, acknowledge, self.command_timeout)

    async def emergency_stop(self, target: str) -> CommandAck:
        return await self.send_raw_command(target, EmergencyStopCommand())

    async def pulse_relay(self, target: str, relay_name: str, duration: float) -> CommandAck:
        """Energize a relay for `duration` seconds, then release it."""
        try:
            await self.send_logical_command(target, relay_name, True)
        except CommandTimeout:
            logger.warning("No acknowledgement energizing %s on %s; releasing anyway", relay_name, target)
        await asyncio.sleep(duration)
        return await self.send_logical_command(target, relay_name, False)

    async def open_door(self, target: str) -> CommandAck:
        return await self.pulse_relay(target, "doorOpen", DOOR_PULSE_SECONDS)

    async def close_door(self, target: str) -> CommandAck:
        return await self.pulse_relay(target, "doorClose", DOOR_PULSE_SECONDS)

    async def select_floor(self, target: str, floor: int) -> CommandAck:
        return await self.pulse_relay(target, f"floor{int(floor)}", FLOOR_PULSE_SECONDS)
