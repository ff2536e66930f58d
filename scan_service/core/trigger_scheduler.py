"""
触发调度：把外部事件归一化为 RunRequest，并计算周期性触发时间。

分类规则是确定性的，无法识别的事件一律返回 None（fail closed），不做猜测。
定时触发完全由 cron 表达式 + 当前时间推导，不依赖进程运行时长，
配合持久化的 last_fired 保证重启前后同一个时间槽只触发一次。
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from croniter import croniter

from scan_service.core.errors import ScheduleConfigError
from scan_service.core.models import EventDescriptor, RunRequest, TriggerKind

logger = logging.getLogger(__name__)

DEFAULT_CRON = "0 1 * * 1"

# 外部事件名 -> 触发类型
EVENT_KINDS: Dict[str, TriggerKind] = {
    "workflow_dispatch": TriggerKind.MANUAL,
    "manual": TriggerKind.MANUAL,
    "schedule": TriggerKind.SCHEDULE,
    "branch_protection_rule": TriggerKind.RULE_CHANGE,
    "push": TriggerKind.PUSH,
}

RULE_ACTIONS = frozenset({"created", "edited", "deleted"})


def _to_naive_utc(dt: datetime) -> datetime:
    # croniter 在 naive 时间上计算，统一按 UTC 处理
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    解析 ISO 时间字符串或 datetime，返回 UTC aware datetime；无法解析时返回 None。
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class WeeklySchedule:
    """
    基于 cron 表达式的声明式调度（默认每周一 01:00 UTC）。
    """

    def __init__(self, expression: str = DEFAULT_CRON) -> None:
        if not croniter.is_valid(expression):
            raise ScheduleConfigError(f"Invalid cron expression: {expression!r}")
        self.expression = expression

    def next_fire_time(self, after: datetime) -> datetime:
        """
        严格晚于 after 的下一个时间槽。
        """
        return _as_utc(croniter(self.expression, _to_naive_utc(after)).get_next(datetime))

    def latest_slot(self, now: datetime) -> datetime:
        """
        不晚于 now 的最近一个时间槽。
        """
        base = _to_naive_utc(now)
        prev = croniter(self.expression, base).get_prev(datetime)
        # base 恰好落在时间槽上时 get_prev 会跳过它
        candidate = croniter(self.expression, prev).get_next(datetime)
        if candidate <= base:
            return _as_utc(candidate)
        return _as_utc(prev)

    def is_slot(self, when: datetime) -> bool:
        return self.latest_slot(when) == _as_utc(_to_naive_utc(when))

    def due(self, now: datetime, last_fired: Optional[datetime]) -> Optional[datetime]:
        """
        返回此刻应当触发的时间槽；已经触发过（不新于 last_fired）则返回 None。

        只补触发最近的一个槽，不会回放停机期间错过的全部槽。
        """
        slot = self.latest_slot(now)
        if last_fired is not None and slot <= last_fired:
            return None
        return slot


class ScheduleStateStore:
    """
    以 JSON 文件持久化最近一次触发的时间槽，使重启后状态一致。
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load(self) -> Optional[datetime]:
        if not self._path.exists():
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable schedule state at %s, treating as empty: %s", self._path, exc)
            return None
        return parse_timestamp(raw.get("last_fired")) if isinstance(raw, dict) else None

    def save(self, slot: datetime) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps({"last_fired": slot.astimezone(timezone.utc).isoformat()}),
            encoding="utf-8",
        )
        tmp.replace(self._path)


def schedule_correlation_id(slot: datetime) -> str:
    return "schedule-" + slot.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%MZ")


def _branch_from_ref(ref: Any) -> Optional[str]:
    if not isinstance(ref, str) or not ref.startswith("refs/heads/"):
        return None
    branch = ref[len("refs/heads/"):]
    return branch or None


class TriggerScheduler:
    """
    负责把 EventDescriptor 分类为唯一的 TriggerKind 并生成 RunRequest。
    """

    def __init__(
        self,
        *,
        schedule: WeeklySchedule,
        push_branches: Iterable[str] = ("develop",),
        enabled_kinds: Optional[Iterable[TriggerKind]] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.schedule = schedule
        self.push_branches = frozenset(push_branches)
        self.enabled_kinds = frozenset(enabled_kinds) if enabled_kinds is not None else frozenset(TriggerKind)
        self._new_id = id_factory
        self._clock = clock

    def classify(self, event: EventDescriptor) -> Optional[RunRequest]:
        kind = EVENT_KINDS.get(event.name)
        if kind is None:
            logger.warning("Unrecognized event name=%s delivery_id=%s, ignored", event.name, event.delivery_id)
            return None
        if kind not in self.enabled_kinds:
            logger.info("Trigger kind=%s disabled, event name=%s ignored", kind.value, event.name)
            return None

        builder = {
            TriggerKind.MANUAL: self._manual,
            TriggerKind.SCHEDULE: self._schedule,
            TriggerKind.RULE_CHANGE: self._rule_change,
            TriggerKind.PUSH: self._push,
        }[kind]
        payload = event.payload if isinstance(event.payload, dict) else {}
        request = builder(event, payload)
        if request is None:
            logger.warning(
                "Event name=%s delivery_id=%s could not be classified, payload keys=%s",
                event.name,
                event.delivery_id,
                sorted(payload.keys()),
            )
        return request

    def _correlation_id(self, event: EventDescriptor) -> str:
        return event.delivery_id or self._new_id()

    def _manual(self, event: EventDescriptor, payload: Dict[str, Any]) -> Optional[RunRequest]:
        ref = payload.get("ref")
        branch = payload.get("branch")
        if ref is not None:
            if not isinstance(ref, str):
                return None
            # workflow_dispatch 的 ref 可能是完整 ref 也可能是分支名
            branch = _branch_from_ref(ref) if ref.startswith("refs/") else ref
            if not branch:
                return None
        if branch is not None and not isinstance(branch, str):
            return None
        correlation_id = payload.get("correlation_id") or self._correlation_id(event)
        return RunRequest(
            trigger_kind=TriggerKind.MANUAL,
            correlation_id=str(correlation_id),
            branch=branch or None,
            reason="manual dispatch",
        )

    def _schedule(self, event: EventDescriptor, payload: Dict[str, Any]) -> Optional[RunRequest]:
        if "scheduled_at" in payload:
            slot = parse_timestamp(payload.get("scheduled_at"))
        elif payload.get("schedule") == self.schedule.expression:
            # GitHub 的 schedule 事件只带 cron 表达式，按当前时间归到最近的槽
            slot = self.schedule.latest_slot(self._clock())
        else:
            slot = None
        if slot is None or not self.schedule.is_slot(slot):
            return None
        # 定时运行只按时间槽去重，不同投递 ID 的同一槽仍是同一次运行
        return RunRequest(
            trigger_kind=TriggerKind.SCHEDULE,
            correlation_id=schedule_correlation_id(slot),
            branch=None,
            reason=f"scheduled run {self.schedule.expression} at {slot.isoformat()}",
        )

    def _rule_change(self, event: EventDescriptor, payload: Dict[str, Any]) -> Optional[RunRequest]:
        action = payload.get("action")
        if action is not None and action not in RULE_ACTIONS:
            return None
        rule = payload.get("rule") or {}
        pattern = rule.get("name") if isinstance(rule, dict) else None
        reason = f"branch protection rule {action or 'changed'}"
        if pattern:
            reason += f" ({pattern})"
        return RunRequest(
            trigger_kind=TriggerKind.RULE_CHANGE,
            correlation_id=self._correlation_id(event),
            branch=None,
            reason=reason,
        )

    def _push(self, event: EventDescriptor, payload: Dict[str, Any]) -> Optional[RunRequest]:
        if payload.get("deleted"):
            return None
        branch = _branch_from_ref(payload.get("ref"))
        if branch is None or branch not in self.push_branches:
            return None
        return RunRequest(
            trigger_kind=TriggerKind.PUSH,
            correlation_id=self._correlation_id(event),
            branch=branch,
            reason=f"push to {branch}",
        )
