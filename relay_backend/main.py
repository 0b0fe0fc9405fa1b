import asyncio
import os
from typing import Any, Dict

import logging

import tornado.ioloop
import tornado.web

from relay_backend.handlers import (
    AdminWebSocketHandler,
    DocsHandler,
    HealthHandler,
    RelayWebSocketHandler,
    make_connection_broadcaster,
)
from relay_backend.repositories import (
    ConnectedRelayRepository,
    DispatchRecordRepository,
    RecurringTaskRepository,
    RelayConfigRepository,
    TaskQueueRepository,
    TemplateRepository,
)
from relay_backend.services.command_router import CommandRouter
from relay_backend.services.dispatch_bridge import QueueDispatchBridge
from relay_backend.services.jwt_service import JWTAuthService
from relay_backend.services.recurring_scheduler import RecurringTaskScheduler
from relay_backend.services.relay_registry import RelayRegistry


def make_app() -> tornado.web.Application:
    registry = RelayRegistry(RelayConfigRepository(), ConnectedRelayRepository())
    router = CommandRouter(registry)
    jwt_service = JWTAuthService()
    state: Dict[str, Any] = {"admin_clients": set()}
    registry.add_listener(make_connection_broadcaster(state, registry))

    return tornado.web.Application(
        [
            (r"/health", HealthHandler),
            (r"/docs", DocsHandler),
            (r"/ws/relay", RelayWebSocketHandler, dict(registry=registry, state=state)),
            (
                r"/ws/admin",
                AdminWebSocketHandler,
                dict(registry=registry, router=router, state=state, jwt_service=jwt_service),
            ),
        ],
        registry=registry,
        router=router,
    )


def make_scheduler() -> RecurringTaskScheduler:
    bridge = QueueDispatchBridge(TemplateRepository(), TaskQueueRepository())
    return RecurringTaskScheduler(RecurringTaskRepository(), DispatchRecordRepository(), bridge)


def setup_logger(name):
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


async def start_background_services(app: tornado.web.Application) -> RecurringTaskScheduler:
    logger = logging.getLogger("relay_backend")
    registry: RelayRegistry = app.settings["registry"]
    sweep_interval = float(os.getenv("RELAY_SWEEP_INTERVAL", "15"))
    app.settings["heartbeat_sweeper"] = asyncio.ensure_future(registry.run_heartbeat_sweeper(sweep_interval))
    logger.info(f"Heartbeat sweeper running every {sweep_interval:g}s")

    scheduler = make_scheduler()
    await scheduler.dispatch_records.ensure_indexes()
    await scheduler.start()
    return scheduler


async def stop_background_services(app: tornado.web.Application, scheduler: RecurringTaskScheduler) -> None:
    """Stop the scheduler and sweeper, then close every device session with 1001."""
    logger = logging.getLogger("relay_backend")
    sweeper = app.settings.pop("heartbeat_sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
    await scheduler.stop()
    await app.settings["registry"].close_all()
    logger.info(f"Application shutdown complete.")


def main() -> None:
    # Module loggers live under the package name, so configure that root.
    logger = setup_logger("relay_backend")
    logger.info(f"Started server process {os.getpid()}")
    port = int(os.environ.get("PORT", "8000"))
    address = os.environ.get("ADDRESS", "0.0.0.0")
    app = make_app()
    logger.info(f"Waiting for application startup...")
    server = app.listen(port=port, address=address)
    io_loop = tornado.ioloop.IOLoop.current()
    scheduler = io_loop.run_sync(lambda: start_background_services(app))
    logger.info(f"Application startup complete.")
    logger.info(f"Tornado running on http://{address}:{port} (Press Ctrl+C to quit)")
    try:
        io_loop.start()
    except KeyboardInterrupt:
        logger.info(f"Shutting down")
    server.stop()
    io_loop.run_sync(lambda: stop_background_services(app, scheduler))


if __name__ == "__main__":
    main()
