import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from relay_backend.models.records import DispatchResult

logger = logging.getLogger(__name__)


class TaskDispatchBridge(Protocol):
    """Where a due recurring task becomes a concrete task request."""

    async def dispatch(
        self,
        *,
        task_type: str,
        floor: Optional[str],
        shelf_point: Optional[str],
        source: str = "recurring",
        definition_id: Optional[str] = None,
        template_id: Optional[str] = None,
        schedule: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult: ...


def robot_serial_number(robot: Any) -> Optional[str]:
    """Extract the robot serial from a template's `robot` field, which may be stored as JSON text."""
    if isinstance(robot, str):
        try:
            robot = json.loads(robot)
        except json.JSONDecodeError:
            logger.error("template robot field is not valid JSON: %r", robot)
            return None
    if not isinstance(robot, dict):
        return None
    serial = robot.get("serial_number") or robot.get("serialNumber")
    return str(serial) if serial else None


class QueueDispatchBridge:
    """Enqueues due recurring tasks into the robot task queue."""

    def __init__(self, template_repo, task_queue_repo, queue_limit: Optional[int] = None):
        self.template_repo = template_repo
        self.task_queue_repo = task_queue_repo
        if queue_limit is None:
            queue_limit = int(os.getenv("TASK_QUEUE_LIMIT", "0"))
        self.queue_limit = queue_limit

    async def dispatch(
        self,
        *,
        task_type: str,
        floor: Optional[str],
        shelf_point: Optional[str],
        source: str = "recurring",
        definition_id: Optional[str] = None,
        template_id: Optional[str] = None,
        schedule: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        template = await self.template_repo.get(template_id) if template_id else None
        if template is None:
            return DispatchResult.reject(f"template {template_id} not found")

        serial = robot_serial_number(template.get("robot"))
        if not serial:
            return DispatchResult.reject(f"template {template_id} has no robot serial number")

        if self.queue_limit and await self.task_queue_repo.count_queued() >= self.queue_limit:
            return DispatchResult.reject("task queue full")

        task_id = await self.task_queue_repo.insert(
            {
                "template_id": template_id,
                "type": task_type,
                "floor": floor,
                "shelf_point": shelf_point,
                "robot_serial_number": serial,
                "status": "queued",
                "source": source,
                "is_recurring": source == "recurring",
                "recurring_task_id": definition_id,
                "schedule": schedule,
                "created_at": datetime.now(timezone.utc),
            }
        )
        logger.info(
            "Queued %s task %s for robot %s (template %s)",
            task_type,
            task_id,
            serial,
            template.get("name", template_id),
        )
        return DispatchResult.accept(task_id)
