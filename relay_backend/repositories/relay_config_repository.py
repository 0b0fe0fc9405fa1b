import logging
import re
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from relay_backend.db.context import DBContext
from relay_backend.models.identity import normalize_identity
from relay_backend.models.records import RelayConfiguration

logger = logging.getLogger(__name__)


def _exact_ci(value: str):
    return re.compile(f"^{re.escape(value)}$", re.IGNORECASE)


class RelayConfigRepository:
    """Read access to administrator-authored relay configurations."""

    def __init__(self, db_context: Optional[DBContext] = None):
        context = db_context or DBContext()
        self.collection = context.database.relay_configurations

    async def find_by_identity(self, identity: str) -> Optional[RelayConfiguration]:
        doc = await self.collection.find_one(
            {"$or": [{"relay_id": _exact_ci(identity)}, {"mac_address": _exact_ci(identity)}]}
        )
        return self._to_model(doc)

    async def find_by_target(self, target: str) -> Optional[RelayConfiguration]:
        """Match a relay id / MAC first, then a display name (case-insensitive)."""
        configuration = await self.find_by_identity(normalize_identity(target))
        if configuration is not None:
            return configuration
        doc = await self.collection.find_one({"relay_name": _exact_ci(target)})
        return self._to_model(doc)

    async def find_by_identities(self, identities: Iterable[str]) -> Dict[str, RelayConfiguration]:
        """Active configurations keyed by whichever requested identity matched them."""
        wanted = {normalize_identity(identity) for identity in identities}
        if not wanted:
            return {}
        patterns = [_exact_ci(identity) for identity in wanted]
        query = {"$or": [{"relay_id": {"$in": patterns}}, {"mac_address": {"$in": patterns}}]}
        found: Dict[str, RelayConfiguration] = {}
        async for doc in self.collection.find(query):
            configuration = self._to_model(doc)
            if configuration is None or not configuration.is_active:
                continue
            for identity in configuration.identities:
                if identity in wanted:
                    found.setdefault(identity, configuration)
        return found

    def _to_model(self, doc) -> Optional[RelayConfiguration]:
        if doc is None:
            return None
        try:
            return RelayConfiguration.from_document(doc)
        except ValidationError as exc:
            logger.error("ignoring invalid relay configuration %s: %s", doc.get("_id"), exc)
            return None
