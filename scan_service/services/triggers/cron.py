"""ScheduleRunner: asyncio loop that fires the weekly scan on schedule."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from scan_service.core.models import EventDescriptor
from scan_service.core.trigger_scheduler import (
    ScheduleStateStore,
    WeeklySchedule,
    schedule_correlation_id,
)
from scan_service.services.triggers.service import Submission, TriggerService

logger = logging.getLogger(__name__)

_DEFAULT_TICK_SECONDS = 60
# 首次启动（无状态）时，只补触发这么近的时间槽
_FIRST_START_GRACE = timedelta(hours=1)


class ScheduleRunner:
    """Ticks every *tick_seconds* and fires the latest cron slot if it has not fired yet.

    Correctness never depends on uptime: the slot is derived from the cron
    expression and the wall clock, and the last fired slot is persisted.
    """

    def __init__(
        self,
        *,
        schedule: WeeklySchedule,
        state: ScheduleStateStore,
        trigger_service: TriggerService,
        tick_seconds: int = _DEFAULT_TICK_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.schedule = schedule
        self._state = state
        self._triggers = trigger_service
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self.prime_state()
        self._task = asyncio.create_task(self._loop(), name="scan-schedule-runner")
        logger.info(
            "ScheduleRunner started cron=%s next_run=%s",
            self.schedule.expression,
            self.next_fire_time().isoformat(),
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ScheduleRunner stopped")

    # ── Core tick ────────────────────────────────────────────────────────────

    async def check_and_fire(self) -> Optional[Submission]:
        """Fire the due slot, if any (single tick)."""
        now = self._clock()
        slot = self.schedule.due(now, self._state.load())
        if slot is None:
            return None

        # Record the slot BEFORE firing so a slow or failing run never fires twice.
        self._state.save(slot)
        event = EventDescriptor(
            name="schedule",
            payload={"scheduled_at": slot.isoformat(), "schedule": self.schedule.expression},
            delivery_id=schedule_correlation_id(slot),
        )
        submission = await self._triggers.submit(event)
        if submission is None:
            logger.warning("Scheduled slot %s was not accepted by the trigger scheduler", slot)
        else:
            logger.info("Scheduled slot %s fired run_id=%s", slot.isoformat(), submission.run_id)
        return submission

    def next_fire_time(self) -> datetime:
        return self.schedule.next_fire_time(self._clock())

    def last_fired(self) -> Optional[datetime]:
        return self._state.load()

    def prime_state(self) -> None:
        """Seed the persisted state on a first start so old slots are not replayed."""
        if self._state.load() is not None:
            return
        now = self._clock()
        slot = self.schedule.latest_slot(now)
        # 没有历史状态且最近的槽已经过去很久：视为已触发，等待下一个槽
        if now - slot > _FIRST_START_GRACE:
            self._state.save(slot)
            logger.info("No schedule state, baseline set to slot=%s", slot.isoformat())

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while True:
            try:
                await self.check_and_fire()
            except Exception:  # noqa: BLE001
                logger.exception("ScheduleRunner tick raised unexpectedly")
            await asyncio.sleep(self._tick_seconds)
