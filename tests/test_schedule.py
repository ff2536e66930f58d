from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

from scan_service.core.trigger_scheduler import ScheduleStateStore, WeeklySchedule
from scan_service.services.triggers.cron import ScheduleRunner

UTC = timezone.utc


def test_next_fire_time_is_next_monday_0100():
    schedule = WeeklySchedule("0 1 * * 1")

    # 2026-10-14 是周三
    nxt = schedule.next_fire_time(datetime(2026, 10, 14, 12, 0, tzinfo=UTC))

    assert nxt == datetime(2026, 10, 19, 1, 0, tzinfo=UTC)
    assert nxt.weekday() == 0


def test_next_fire_time_is_strictly_after():
    schedule = WeeklySchedule("0 1 * * 1")
    slot = datetime(2026, 10, 12, 1, 0, tzinfo=UTC)

    assert schedule.next_fire_time(slot) == slot + timedelta(days=7)


def test_latest_slot_includes_exact_slot():
    schedule = WeeklySchedule("0 1 * * 1")
    slot = datetime(2026, 10, 12, 1, 0, tzinfo=UTC)

    assert schedule.latest_slot(slot) == slot
    assert schedule.latest_slot(slot - timedelta(seconds=1)) == slot - timedelta(days=7)
    assert schedule.latest_slot(slot + timedelta(days=3)) == slot


def test_next_fire_time_handles_other_timezones():
    schedule = WeeklySchedule("0 1 * * 1")
    # 周一 09:30 +08:00 即周一 01:30 UTC，已过本周时间槽
    local = datetime(2026, 10, 12, 9, 30, tzinfo=timezone(timedelta(hours=8)))

    assert schedule.next_fire_time(local) == datetime(2026, 10, 19, 1, 0, tzinfo=UTC)


def test_due_fires_each_slot_once():
    schedule = WeeklySchedule("0 1 * * 1")
    now = datetime(2026, 10, 12, 1, 5, tzinfo=UTC)

    slot = schedule.due(now, last_fired=datetime(2026, 10, 5, 1, 0, tzinfo=UTC))

    assert slot == datetime(2026, 10, 12, 1, 0, tzinfo=UTC)
    assert schedule.due(now, last_fired=slot) is None


def test_state_store_round_trip_and_corruption():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nested" / "state.json"
        store = ScheduleStateStore(path)
        assert store.load() is None

        slot = datetime(2026, 10, 12, 1, 0, tzinfo=UTC)
        store.save(slot)
        assert ScheduleStateStore(path).load() == slot

        path.write_text("{not json", encoding="utf-8")
        assert store.load() is None


class TestScheduleRunner(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.state_path = Path(self._tmp.name) / "schedule_state.json"
        self.now = datetime(2026, 10, 5, 0, 0, tzinfo=UTC)
        self.triggers = Mock()
        self.triggers.submit = AsyncMock(return_value=Mock(run_id="run-1"))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _new_runner(self) -> ScheduleRunner:
        # 每次“重启”都重新构建全部对象，只共享磁盘上的状态文件
        runner = ScheduleRunner(
            schedule=WeeklySchedule("0 1 * * 1"),
            state=ScheduleStateStore(self.state_path),
            trigger_service=self.triggers,
            clock=lambda: self.now,
        )
        runner.prime_state()
        return runner

    async def test_fires_once_per_week_across_restarts(self) -> None:
        runner = self._new_runner()
        end = self.now + timedelta(weeks=4)
        tick = 0
        while self.now < end:
            await runner.check_and_fire()
            tick += 1
            if tick % 7 == 0:
                runner = self._new_runner()
            self.now += timedelta(minutes=20)

        events = [c.args[0] for c in self.triggers.submit.await_args_list]
        slots = [datetime.fromisoformat(e.payload["scheduled_at"]) for e in events]
        self.assertEqual(
            slots,
            [datetime(2026, 10, d, 1, 0, tzinfo=UTC) for d in (5, 12, 19, 26)],
        )
        weeks = [s.isocalendar()[:2] for s in slots]
        self.assertEqual(len(weeks), len(set(weeks)))
        self.assertEqual(events[0].delivery_id, "schedule-2026-10-05T01:00Z")

    async def test_restart_after_missed_slot_fires_once(self) -> None:
        runner = self._new_runner()
        self.now = datetime(2026, 10, 5, 1, 0, tzinfo=UTC)
        await runner.check_and_fire()
        self.assertEqual(self.triggers.submit.await_count, 1)

        # 停机跨过了两个时间槽，重启后只补触发最近的一个
        self.now = datetime(2026, 10, 21, 8, 0, tzinfo=UTC)
        runner = self._new_runner()
        await runner.check_and_fire()
        await runner.check_and_fire()

        self.assertEqual(self.triggers.submit.await_count, 2)
        last_event = self.triggers.submit.await_args.args[0]
        self.assertEqual(last_event.payload["scheduled_at"], "2026-10-19T01:00:00+00:00")

    async def test_first_start_long_after_slot_does_not_fire(self) -> None:
        self.now = datetime(2026, 10, 14, 12, 0, tzinfo=UTC)
        runner = self._new_runner()

        self.assertIsNone(await runner.check_and_fire())
        self.triggers.submit.assert_not_awaited()
        self.assertEqual(runner.next_fire_time(), datetime(2026, 10, 19, 1, 0, tzinfo=UTC))
        self.assertEqual(runner.last_fired(), datetime(2026, 10, 12, 1, 0, tzinfo=UTC))

    async def test_slot_is_recorded_even_when_submit_raises(self) -> None:
        self.triggers.submit = AsyncMock(side_effect=RuntimeError("boom"))
        runner = self._new_runner()
        self.now = datetime(2026, 10, 5, 1, 0, tzinfo=UTC)

        with self.assertRaises(RuntimeError):
            await runner.check_and_fire()

        self.assertEqual(runner.last_fired(), datetime(2026, 10, 5, 1, 0, tzinfo=UTC))
        self.assertIsNone(await runner.check_and_fire())
