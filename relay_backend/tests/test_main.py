import asyncio
import types

import pytest

from relay_backend.conftest import ELEVATOR_MAC, FakeConfigRepository, FakeConnectedRepository, FakeTransport, elevator_configuration


class FakeScheduler:
    def __init__(self):
        self.running = False
        self.indexed = False

        async def ensure_indexes():
            self.indexed = True

        self.dispatch_records = types.SimpleNamespace(ensure_indexes=ensure_indexes)

    async def start(self):
        self.running = True

    async def stop(self):
        self.running = False


@pytest.mark.asyncio
async def test_background_services_start_and_shut_down(monkeypatch):
    import relay_backend.main as main

    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("RELAY_SWEEP_INTERVAL", "60")
    config_repo = FakeConfigRepository(elevator_configuration())
    connected_repo = FakeConnectedRepository()
    scheduler = FakeScheduler()
    monkeypatch.setattr(main, "RelayConfigRepository", lambda: config_repo)
    monkeypatch.setattr(main, "ConnectedRelayRepository", lambda: connected_repo)
    monkeypatch.setattr(main, "make_scheduler", lambda: scheduler)

    app = main.make_app()
    assert await main.start_background_services(app) is scheduler
    assert scheduler.running and scheduler.indexed
    sweeper = app.settings["heartbeat_sweeper"]

    transport = FakeTransport()
    session = await app.settings["registry"].register_session(ELEVATOR_MAC, transport)

    await main.stop_background_services(app, scheduler)

    assert not scheduler.running
    with pytest.raises(asyncio.CancelledError):
        await sweeper
    assert session.closed
    assert transport.closed_with == (1001, "server shutdown")
    assert connected_repo.status[ELEVATOR_MAC] == "offline"
    assert app.settings["registry"].session_for(ELEVATOR_MAC) is None
