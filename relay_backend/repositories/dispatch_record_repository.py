import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from relay_backend.db.context import DBContext
from relay_backend.models.records import DispatchRecord, DispatchResult

logger = logging.getLogger(__name__)


class DispatchRecordRepository:
    """
    One document per (recurring task, calendar date) that has fired.

    The unique index makes `try_claim` the only gate between concurrent ticks
    or processes racing for the same firing.
    """

    def __init__(self, db_context: Optional[DBContext] = None):
        context = db_context or DBContext()
        self.collection = context.database.dispatch_records

    async def ensure_indexes(self):
        await self.collection.create_index(
            [("definition_id", ASCENDING), ("dispatch_date", ASCENDING)], unique=True
        )

    async def try_claim(self, definition_id: str, dispatch_date: date, now: datetime, lease: timedelta) -> bool:
        day = dispatch_date.isoformat()
        try:
            await self.collection.insert_one(
                {"definition_id": definition_id, "dispatch_date": day, "status": "claimed", "claimed_at": now}
            )
            return True
        except DuplicateKeyError:
            logger.debug("recurring task %s already has a dispatch record for %s", definition_id, day)

        # A claim that was never confirmed belongs to a process that died mid hand-off.
        taken_over = await self.collection.find_one_and_update(
            {
                "definition_id": definition_id,
                "dispatch_date": day,
                "status": "claimed",
                "claimed_at": {"$lt": now - lease},
            },
            {"$set": {"claimed_at": now}},
        )
        return taken_over is not None

    async def confirm(self, definition_id: str, dispatch_date: date, result: DispatchResult):
        await self.collection.update_one(
            {"definition_id": definition_id, "dispatch_date": dispatch_date.isoformat()},
            {
                "$set": {
                    "status": "dispatched" if result.accepted else "rejected",
                    "task_id": result.task_id,
                    "reason": result.reason,
                }
            },
        )

    async def release(self, definition_id: str, dispatch_date: date):
        await self.collection.delete_one(
            {"definition_id": definition_id, "dispatch_date": dispatch_date.isoformat(), "status": "claimed"}
        )

    async def prune_before(self, dispatch_date: date):
        # ISO dates sort lexicographically.
        await self.collection.delete_many({"dispatch_date": {"$lt": dispatch_date.isoformat()}})

    async def list_for(self, dispatch_date: date) -> List[DispatchRecord]:
        records = []
        async for doc in self.collection.find({"dispatch_date": dispatch_date.isoformat()}):
            records.append(DispatchRecord.model_validate(doc))
        return records
