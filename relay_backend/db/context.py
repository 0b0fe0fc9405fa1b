import os

from pymongo.asynchronous.mongo_client import AsyncMongoClient


class DBContext:
    """Singleton wrapper around the async MongoDB client."""

    _instance: "DBContext | None" = None

    def __new__(cls) -> "DBContext":
        if cls._instance is None:
            mongo_url = os.getenv("MONGODB_URL")
            if not mongo_url:
                raise RuntimeError("MONGODB_URL environment variable is not set")
            instance = super().__new__(cls)
            instance._client = AsyncMongoClient(mongo_url)
            instance._db = instance._client[os.getenv("MONGODB_DATABASE", "fleet_db")]
            cls._instance = instance
        return cls._instance

    @property
    def database(self):
        return self._db
