import asyncio
import inspect
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

from relay_backend.errors import DeviceNotFound, DeviceOffline
from relay_backend.models.identity import normalize_identity
from relay_backend.models.records import ConnectedRelay, RelayConfiguration
from relay_backend.services.device_session import DeviceSession

logger = logging.getLogger(__name__)

CLOSE_SUPERSEDED = 4000
CLOSE_HEARTBEAT_TIMEOUT = 4008


@dataclass(frozen=True)
class RegistryEvent:
    kind: Literal["connected", "disconnected"]
    identity: str
    session: DeviceSession
    reason: str = ""


RegistryListener = Callable[[RegistryEvent], Any]


class RelayRegistry:
    """
    Single owner of the identity -> live session map.

    Configurations are read through `config_repo` on every lookup rather than
    cached, so edits made through the admin surface take effect immediately.
    """

    def __init__(
        self,
        config_repo,
        connected_repo=None,
        heartbeat_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config_repo = config_repo
        self.connected_repo = connected_repo
        if heartbeat_timeout is None:
            heartbeat_timeout = float(os.getenv("RELAY_HEARTBEAT_TIMEOUT", "90"))
        self.heartbeat_timeout = heartbeat_timeout
        self._clock = clock
        self._sessions: Dict[str, DeviceSession] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[RegistryListener] = []

    def add_listener(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    def session_for(self, identity: str) -> Optional[DeviceSession]:
        return self._sessions.get(normalize_identity(identity))

    async def register_session(
        self,
        identity: str,
        transport: Any,
        declared_capabilities: Optional[Iterable[str]] = None,
        ip: Optional[str] = None,
    ) -> DeviceSession:
        identity = normalize_identity(identity)
        session = DeviceSession(identity, transport, list(declared_capabilities or []), ip, clock=self._clock)
        async with self._lock:
            previous = self._sessions.pop(identity, None)
            if previous is not None:
                previous.close(CLOSE_SUPERSEDED, "superseded")
            self._sessions[identity] = session

        if previous is not None:
            logger.info("Relay %s reconnected; previous session superseded", identity)
        logger.info("Relay %s connected from %s", identity, ip or "unknown")
        await self._record_online(session)
        await self._emit(RegistryEvent("connected", identity, session))
        return session

    async def unregister_session(
        self,
        identity: str,
        session: Optional[DeviceSession] = None,
        code: int = 1000,
        reason: str = "closed",
    ) -> bool:
        """
        Remove the live session for `identity`.

        When `session` is given it must still be the live one; a superseded
        session's close callback therefore never removes its replacement.
        """
        identity = normalize_identity(identity)
        async with self._lock:
            current = self._sessions.get(identity)
            if current is None or (session is not None and current is not session):
                return False
            del self._sessions[identity]
            current.close(code, reason)

        logger.info("Relay %s disconnected (%s)", identity, reason)
        await self._record_offline(identity)
        await self._emit(RegistryEvent("disconnected", identity, current, reason))
        return True

    async def resolve(self, target: str) -> DeviceSession:
        """Find the live session for a device identity or a configuration name."""
        try:
            identity = normalize_identity(target)
        except ValueError as exc:
            raise DeviceNotFound("a device identity or relay name is required") from exc

        async with self._lock:
            session = self._sessions.get(identity)
        if session is not None:
            return session

        configuration = await self.config_repo.find_by_target(str(target).strip())
        if configuration is None or not configuration.is_active:
            raise DeviceNotFound(f"no connected relay or configuration matches '{target}'", identity)

        async with self._lock:
            session = next(
                (self._sessions[i] for i in configuration.identities if i in self._sessions), None
            )
        if session is None:
            raise DeviceOffline(f"relay '{configuration.relay_name}' is offline", configuration.identities[0])
        return session

    async def configuration_for(self, identity: str) -> Optional[RelayConfiguration]:
        configuration = await self.config_repo.find_by_identity(normalize_identity(identity))
        if configuration is None or not configuration.is_active:
            return None
        return configuration

    async def list_connected(self) -> List[ConnectedRelay]:
        now = self._clock()
        async with self._lock:
            sessions = [
                session
                for session in self._sessions.values()
                if not session.is_stale(now, self.heartbeat_timeout)
            ]
        if not sessions:
            return []
        configurations = await self.config_repo.find_by_identities([s.identity for s in sessions])
        return [session.snapshot(configurations.get(session.identity)) for session in sessions]

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Unregister every session whose last inbound frame is older than the heartbeat window."""
        now = self._clock() if now is None else now
        async with self._lock:
            expired = [
                session
                for session in self._sessions.values()
                if session.is_stale(now, self.heartbeat_timeout)
            ]

        removed = []
        for session in expired:
            if await self.unregister_session(
                session.identity, session, code=CLOSE_HEARTBEAT_TIMEOUT, reason="heartbeat timeout"
            ):
                logger.warning(
                    "Relay %s silent for more than %gs; session dropped",
                    session.identity,
                    self.heartbeat_timeout,
                )
                removed.append(session.identity)
        return removed

    async def run_heartbeat_sweeper(self, interval: float = 15.0) -> None:
        """Sweep forever; cancel the task to stop."""
        interval = max(0.5, float(interval))
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("heartbeat sweep failed")
            await asyncio.sleep(interval)

    async def close_all(self, reason: str = "server shutdown") -> None:
        async with self._lock:
            identities = list(self._sessions)
        for identity in identities:
            await self.unregister_session(identity, code=1001, reason=reason)

    async def _record_online(self, session: DeviceSession) -> None:
        if self.connected_repo is None:
            return
        try:
            configuration = await self.configuration_for(session.identity)
            await self.connected_repo.mark_online(
                session.identity,
                ip=session.ip,
                configuration_id=configuration.id if configuration else None,
            )
        except Exception:
            logger.exception("failed to record relay %s as online", session.identity)

    async def _record_offline(self, identity: str) -> None:
        if self.connected_repo is None:
            return
        try:
            await self.connected_repo.mark_offline(identity)
        except Exception:
            logger.exception("failed to record relay %s as offline", identity)

    async def _emit(self, event: RegistryEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("registry listener failed for %s event on %s", event.kind, event.identity)
