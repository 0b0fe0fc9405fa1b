from typing import Any, Dict, Optional

from bson import ObjectId

from relay_backend.db.context import DBContext


class TemplateRepository:
    """Read access to robot task templates."""

    def __init__(self, db_context: Optional[DBContext] = None):
        context = db_context or DBContext()
        self.collection = context.database.templates

    async def get(self, template_id: str) -> Optional[Dict[str, Any]]:
        clauses = [{"_id": template_id}, {"id": template_id}]
        if ObjectId.is_valid(template_id):
            clauses.append({"_id": ObjectId(template_id)})
        return await self.collection.find_one({"$or": clauses})


class TaskQueueRepository:
    """Data access layer for the robot task queue fed by the dispatch bridge."""

    def __init__(self, db_context: Optional[DBContext] = None):
        context = db_context or DBContext()
        self.collection = context.database.task_queue

    async def insert(self, task: Dict[str, Any]) -> str:
        result = await self.collection.insert_one(dict(task))
        return str(result.inserted_id)

    async def count_queued(self) -> int:
        return await self.collection.count_documents({"status": "queued"})
