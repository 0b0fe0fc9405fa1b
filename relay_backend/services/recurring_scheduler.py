"""
Recurring task scheduler.

One polling loop, aligned to minute boundaries, that:
- loads every active recurring task definition,
- picks the ones whose schedule time and weekday match the current minute,
- claims the day's dispatch record for each (at most one firing per day),
- hands the task to the dispatch bridge and confirms the record.

Times are compared as naive wall-clock values in one process-wide zone. A
repeated hour on a daylight-saving fold still fires once (the day record
holds), while a time inside a skipped hour never fires that day. Minutes the
process was not running for are never backfilled.
"""

import asyncio
import contextlib
import logging
import os
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from relay_backend.models.records import DispatchOutcome, RecurringTaskDefinition, weekday_token

logger = logging.getLogger(__name__)


def is_due(definition: RecurringTaskDefinition, now: datetime) -> bool:
    return (
        definition.is_active
        and (now.hour, now.minute) == (definition.schedule_time.hour, definition.schedule_time.minute)
        and weekday_token(now) in definition.days_of_week
    )


def _resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    if not name:
        return None
    return ZoneInfo(name)


class RecurringTaskScheduler:
    def __init__(
        self,
        task_repo,
        dispatch_records,
        bridge,
        *,
        interval_seconds: float = 60.0,
        timezone_name: Optional[str] = None,
        claim_lease_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.task_repo = task_repo
        self.dispatch_records = dispatch_records
        self.bridge = bridge
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.timezone = _resolve_timezone(timezone_name or os.getenv("SCHEDULER_TIMEZONE"))
        if claim_lease_seconds is None:
            claim_lease_seconds = float(os.getenv("SCHEDULER_CLAIM_LEASE", "30"))
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self._clock = clock or (lambda: datetime.now(self.timezone))
        self.is_running = False
        self.last_check: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self, now: Optional[datetime] = None) -> List[DispatchOutcome]:
        """Evaluate every definition once for the current minute."""
        now = now or self._clock()
        self.last_check = now
        today = now.date()

        try:
            await self.dispatch_records.prune_before(today)
        except Exception:
            logger.exception("failed to prune dispatch records before %s", today)

        try:
            definitions = await self.task_repo.list_active()
        except Exception:
            logger.exception("failed to load recurring tasks")
            return []

        due = [definition for definition in definitions if is_due(definition, now)]
        if not due:
            logger.debug("No recurring tasks due at %s on %s", now.strftime("%H:%M"), weekday_token(now))
            return []

        logger.info("Found %d recurring tasks due at %s", len(due), now.strftime("%H:%M"))
        outcomes = []
        for definition in due:
            outcomes.append(await self._fire(definition, today))
        return outcomes

    async def _fire(self, definition: RecurringTaskDefinition, today: date) -> DispatchOutcome:
        try:
            claimed = await self.dispatch_records.try_claim(
                definition.id, today, datetime.now(timezone.utc), self.claim_lease
            )
        except Exception as exc:
            logger.exception("failed to claim dispatch record for recurring task %s", definition.id)
            return DispatchOutcome(definition_id=definition.id, status="failed", reason=str(exc))
        if not claimed:
            return DispatchOutcome(definition_id=definition.id, status="skipped", reason="already dispatched today")

        try:
            result = await self.bridge.dispatch(
                task_type=definition.task_type,
                floor=definition.floor,
                shelf_point=definition.shelf_point,
                source="recurring",
                definition_id=definition.id,
                template_id=definition.template_id,
                schedule={
                    "time": definition.schedule_label(),
                    "days_of_week": list(definition.days_of_week),
                    "is_recurring": True,
                },
            )
        except Exception as exc:
            # Released so a later tick in the same minute can retry; the next minute no longer matches.
            logger.exception("dispatch of recurring task %s failed", definition.id)
            await self._release(definition.id, today)
            return DispatchOutcome(definition_id=definition.id, status="failed", reason=str(exc))

        try:
            await self.dispatch_records.confirm(definition.id, today, result)
        except Exception:
            logger.exception("failed to confirm dispatch record for recurring task %s", definition.id)

        if not result.accepted:
            logger.warning("Recurring task %s rejected: %s", definition.id, result.reason)
            return DispatchOutcome(definition_id=definition.id, status="rejected", reason=result.reason)
        logger.info("Recurring task %s dispatched as task %s", definition.id, result.task_id)
        return DispatchOutcome(definition_id=definition.id, status="dispatched", task_id=result.task_id)

    async def _release(self, definition_id: str, today: date) -> None:
        try:
            await self.dispatch_records.release(definition_id, today)
        except Exception:
            logger.exception("failed to release dispatch claim for recurring task %s", definition_id)

    def seconds_until_next_tick(self, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        elapsed = (now - midnight).total_seconds() % self.interval_seconds
        return self.interval_seconds - elapsed + 0.05

    async def run(self) -> None:
        """Tick now, then once per interval on the boundary. Ticks never overlap."""
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("recurring task tick failed")
            await asyncio.sleep(self.seconds_until_next_tick())

    async def start(self) -> None:
        if self.is_running:
            logger.info("RecurringTaskScheduler is already running")
            return
        self.is_running = True
        self._task = asyncio.get_running_loop().create_task(self.run())
        logger.info("RecurringTaskScheduler started (timezone %s)", self.timezone or "local")

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("RecurringTaskScheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "timezone": str(self.timezone) if self.timezone else "local",
        }
