import logging
from typing import List, Optional

from pydantic import ValidationError

from relay_backend.db.context import DBContext
from relay_backend.models.records import RecurringTaskDefinition

logger = logging.getLogger(__name__)


class RecurringTaskRepository:
    """Data access layer for recurring task definitions."""

    def __init__(self, db_context: Optional[DBContext] = None):
        context = db_context or DBContext()
        self.collection = context.database.recurring_tasks

    async def list_active(self) -> List[RecurringTaskDefinition]:
        definitions = []
        async for doc in self.collection.find({"is_active": True}).sort("created_at", -1):
            try:
                definitions.append(RecurringTaskDefinition.from_document(doc))
            except ValidationError as exc:
                logger.error("skipping invalid recurring task %s: %s", doc.get("_id"), exc)
        return definitions
