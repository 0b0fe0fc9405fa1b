from datetime import datetime, timezone
from typing import Optional

from relay_backend.db.context import DBContext


class ConnectedRelayRepository:
    """Tracks which relay boards have been seen and whether they are online."""

    def __init__(self, db_context: Optional[DBContext] = None):
        context = db_context or DBContext()
        self.collection = context.database.connected_relays

    async def mark_online(self, identity: str, ip: Optional[str] = None, configuration_id: Optional[str] = None):
        update = {
            "status": "online",
            "is_connected": True,
            "ip_address": ip,
            "last_seen": datetime.now(timezone.utc),
        }
        if configuration_id is not None:
            update["relay_configuration_id"] = configuration_id
        await self.collection.update_one({"mac_address": identity}, {"$set": update}, upsert=True)

    async def mark_offline(self, identity: str):
        await self.collection.update_one(
            {"mac_address": identity},
            {"$set": {"status": "offline", "is_connected": False, "last_seen": datetime.now(timezone.utc)}},
        )
