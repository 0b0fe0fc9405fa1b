from .health_handler import HealthHandler
from .docs_handler import DocsHandler
from .relay_ws_handler import RelayWebSocketHandler
from .admin_ws_handler import AdminWebSocketHandler, broadcast, make_connection_broadcaster

__all__ = [
    "HealthHandler",
    "DocsHandler",
    "RelayWebSocketHandler",
    "AdminWebSocketHandler",
    "broadcast",
    "make_connection_broadcaster",
]
