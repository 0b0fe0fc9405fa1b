import json
import sys
from pathlib import Path

import pytest

# Ensure repository root is importable for `import relay_backend`
ROOT = Path(__file__).resolve().parent
REPO_ROOT = ROOT.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from relay_backend.models.identity import normalize_identity  # noqa: E402
from relay_backend.models.records import RelayConfiguration  # noqa: E402


class FakeTransport:
    """Stands in for the device WebSocket; records what the server writes."""

    def __init__(self, on_write=None):
        self.sent = []
        self.closed_with = None
        self.on_write = on_write

    def write_message(self, message):
        payload = json.loads(message)
        self.sent.append(payload)
        if self.on_write is not None:
            self.on_write(payload)

    def close(self, code=None, reason=None):
        self.closed_with = (code, reason)

    def sent_types(self):
        return [payload["type"] for payload in self.sent]


class FakeConfigRepository:
    def __init__(self, *configurations):
        self.configurations = {c.relay_id: c for c in configurations}

    def put(self, configuration: RelayConfiguration):
        self.configurations[configuration.relay_id] = configuration

    def remove(self, identity):
        self.configurations.pop(normalize_identity(identity), None)

    async def find_by_identity(self, identity):
        identity = normalize_identity(identity)
        return next((c for c in self.configurations.values() if identity in c.identities), None)

    async def find_by_target(self, target):
        found = await self.find_by_identity(target)
        if found is not None:
            return found
        for configuration in self.configurations.values():
            if configuration.relay_name.lower() == target.lower():
                return configuration
        return None

    async def find_by_identities(self, identities):
        found = {}
        for identity in identities:
            configuration = await self.find_by_identity(identity)
            if configuration is not None and configuration.is_active:
                found[identity] = configuration
        return found


class FakeConnectedRepository:
    def __init__(self):
        self.status = {}

    async def mark_online(self, identity, ip=None, configuration_id=None):
        self.status[identity] = "online"

    async def mark_offline(self, identity):
        self.status[identity] = "offline"


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


ELEVATOR_MAC = "AA:BB:CC:DD:EE:01"


def elevator_configuration(**overrides) -> RelayConfiguration:
    data = {
        "id": "cfg-1",
        "relay_id": ELEVATOR_MAC,
        "relay_name": "Elevator A",
        "relay_map": {"doorOpen": 0, "doorClose": 1, "floor1": 2, "floor2": 3},
    }
    data.update(overrides)
    return RelayConfiguration.model_validate(data)


@pytest.fixture
def config_repo():
    return FakeConfigRepository(elevator_configuration())


@pytest.fixture
def connected_repo():
    return FakeConnectedRepository()


@pytest.fixture
def clock():
    return ManualClock()
