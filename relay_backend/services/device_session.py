import asyncio
import inspect
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import tornado.iostream
import tornado.websocket
from pydantic import BaseModel

from relay_backend.errors import CommandTimeout, DeviceOffline, RelayError
from relay_backend.models.messages import (
    CommandAck,
    DeviceErrorFrame,
    DeviceFrame,
    DeviceRegisterFrame,
    EmergencyStopCommand,
    GetRelayInfoCommand,
    GetStatusCommand,
    PingCommand,
    PongFrame,
    RelayControlCommand,
    RelayInfoFrame,
    RelayStateFrame,
    SetRelayCommand,
    StatusFrame,
)
from relay_backend.models.records import DEFAULT_NUM_RELAYS, ConnectedRelay, RelayConfiguration

logger = logging.getLogger(__name__)

AckPredicate = Callable[[DeviceFrame], bool]


def acknowledgement_for(
    command: BaseModel, relay_name: Optional[str] = None, relay_names: Optional[List[str]] = None
) -> Optional[AckPredicate]:
    """
    Return the predicate an inbound frame must satisfy to complete `command`.

    Relay commands complete on a `relay_state` report. The relay is looked up in
    the report by `relay_name`, or by the name the device declared for its index
    in `relay_names`; when the report names it, its state must match the
    requested one. A report that does not name it must show some relay in the
    requested state, so the empty or all-off report that follows an emergency
    stop never acknowledges a relay being switched on.
    """
    if isinstance(command, (SetRelayCommand, RelayControlCommand)):
        name = relay_name
        if name is None and isinstance(command.relay, str):
            name = command.relay
        elif name is None and relay_names and 0 <= command.relay < len(relay_names):
            name = relay_names[command.relay]
        wanted = command.state

        def relay_state_matches(frame: DeviceFrame) -> bool:
            if not isinstance(frame, RelayStateFrame):
                return False
            if name and name in frame.states:
                return frame.states[name] == wanted
            return wanted in frame.states.values()

        return relay_state_matches
    if isinstance(command, EmergencyStopCommand):
        return lambda frame: isinstance(frame, RelayStateFrame)
    if isinstance(command, GetRelayInfoCommand):
        return lambda frame: isinstance(frame, RelayInfoFrame)
    if isinstance(command, GetStatusCommand):
        return lambda frame: isinstance(frame, StatusFrame)
    if isinstance(command, PingCommand):
        return lambda frame: isinstance(frame, PongFrame)
    return None


class DeviceSession:
    """
    Live state of one connected relay board.

    Commands submitted through `submit` are written one at a time in FIFO order by
    a per-session worker task; `send_immediate` bypasses that queue.
    """

    def __init__(
        self,
        identity: str,
        transport: Any,
        capabilities: Optional[List[str]] = None,
        ip: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.identity = identity
        self.transport = transport
        self.ip = ip
        self.capabilities: List[str] = list(capabilities or [])
        self.relay_names: List[str] = []
        self.relay_states: Dict[str, bool] = {}
        self.info: Dict[str, Dict[str, Any]] = {}
        self.num_relays = DEFAULT_NUM_RELAYS
        self.created_at = datetime.now(timezone.utc)
        self.last_seen = self.created_at
        self._clock = clock
        self.last_heartbeat = clock()
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self._waiters: List[Tuple[AckPredicate, asyncio.Future]] = []

    def __repr__(self) -> str:
        return f"<DeviceSession {self.identity} closed={self.closed}>"

    def touch(self) -> None:
        self.last_heartbeat = self._clock()
        self.last_seen = datetime.now(timezone.utc)

    def is_stale(self, now: float, window: float) -> bool:
        return now - self.last_heartbeat > window

    def handle_frame(self, frame: DeviceFrame) -> None:
        """Apply an inbound frame to the session state and complete any waiting command."""
        self.touch()
        if isinstance(frame, RelayStateFrame):
            self.relay_states.update(frame.states)
        elif isinstance(frame, RelayInfoFrame):
            self.info["relay_info"] = frame.model_dump()
            if frame.capabilities:
                self.capabilities = list(frame.capabilities)
            if frame.relay_names:
                self.relay_names = list(frame.relay_names)
            if frame.num_relays:
                self.num_relays = frame.num_relays
        elif isinstance(frame, StatusFrame):
            self.info["status"] = frame.model_dump()
            if frame.ip_address:
                self.ip = frame.ip_address
        elif isinstance(frame, DeviceRegisterFrame):
            self.info["register"] = frame.model_dump()
            if frame.ip:
                self.ip = frame.ip
        elif isinstance(frame, DeviceErrorFrame):
            logger.warning("relay %s reported error: %s", self.identity, frame.error)

        matched = False
        for predicate, waiter in list(self._waiters):
            if not waiter.done() and predicate(frame):
                waiter.set_result(frame)
                matched = True
        if not matched and isinstance(frame, (RelayStateFrame, PongFrame)):
            logger.debug("unsolicited %s from %s", frame.type, self.identity)

    async def send(self, command: BaseModel) -> Dict[str, Any]:
        """Write one command to the device without waiting for a reply."""
        if self.closed:
            raise DeviceOffline(f"relay {self.identity} is not connected", self.identity)
        payload = command.model_dump(mode="json")
        try:
            result = self.transport.write_message(json.dumps(payload))
            if inspect.isawaitable(result):
                await result
        except (tornado.websocket.WebSocketClosedError, tornado.iostream.StreamClosedError) as exc:
            raise DeviceOffline(f"relay {self.identity} connection closed", self.identity) from exc
        return payload

    async def exchange(
        self, command: BaseModel, acknowledge: Optional[AckPredicate], timeout: float
    ) -> CommandAck:
        command_type = getattr(command, "type", type(command).__name__)
        if acknowledge is None:
            payload = await self.send(command)
            return CommandAck(identity=self.identity, command=command_type, payload=payload, acknowledged=False)

        waiter = asyncio.get_running_loop().create_future()
        entry = (acknowledge, waiter)
        # Registered before the write so a fast reply cannot slip past.
        self._waiters.append(entry)
        try:
            payload = await self.send(command)
            try:
                frame = await asyncio.wait_for(waiter, timeout)
            except asyncio.TimeoutError:
                raise CommandTimeout(
                    f"relay {self.identity} did not acknowledge {command_type} within {timeout:g}s",
                    self.identity,
                )
        finally:
            self._waiters.remove(entry)
        return CommandAck(
            identity=self.identity,
            command=command_type,
            payload=payload,
            reply=frame.model_dump(),
        )

    async def submit(self, command: BaseModel, acknowledge: Optional[AckPredicate], timeout: float) -> CommandAck:
        """Queue a command behind any in-flight one and wait for its outcome."""
        if self.closed:
            raise DeviceOffline(f"relay {self.identity} is not connected", self.identity)
        loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain_queue())
        result = loop.create_future()
        self._queue.put_nowait((command, acknowledge, timeout, result))
        return await result

    async def send_immediate(
        self, command: BaseModel, acknowledge: Optional[AckPredicate], timeout: float
    ) -> CommandAck:
        return await self.exchange(command, acknowledge, timeout)

    async def _drain_queue(self) -> None:
        while True:
            command, acknowledge, timeout, result = await self._queue.get()
            if result.done():
                continue
            self._inflight = result
            try:
                ack = await self.exchange(command, acknowledge, timeout)
            except RelayError as exc:
                if not result.done():
                    result.set_exception(exc)
            except Exception as exc:
                logger.exception("unexpected failure sending %s to %s", command, self.identity)
                if not result.done():
                    result.set_exception(exc)
            else:
                if not result.done():
                    result.set_result(ack)
            finally:
                self._inflight = None

    def pending_commands(self) -> int:
        return self._queue.qsize() + (1 if self._inflight is not None else 0)

    def close(self, code: int = 1000, reason: str | None = None) -> None:
        """Tear the session down; every waiting or queued command fails with DeviceOffline."""
        if self.closed:
            return
        self.closed = True

        def offline() -> DeviceOffline:
            return DeviceOffline(f"relay {self.identity} disconnected ({reason or 'closed'})", self.identity)

        for _, waiter in self._waiters:
            if not waiter.done():
                waiter.set_exception(offline())
        if self._inflight is not None and not self._inflight.done():
            self._inflight.set_exception(offline())
        while not self._queue.empty():
            *_, result = self._queue.get_nowait()
            if not result.done():
                result.set_exception(offline())
        if self._worker is not None:
            self._worker.cancel()
        self.transport.close(code, reason)

    def snapshot(self, configuration: Optional[RelayConfiguration] = None) -> ConnectedRelay:
        return ConnectedRelay(
            identity=self.identity,
            capabilities=list(self.capabilities),
            last_heartbeat=self.last_seen,
            config_name=configuration.relay_name if configuration else None,
            config_id=configuration.id if configuration else None,
            ip=self.ip,
            states=dict(self.relay_states),
        )
