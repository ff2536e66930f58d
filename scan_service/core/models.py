from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TriggerKind(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    RULE_CHANGE = "rule_change"
    PUSH = "push"


class ExitStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class EventDescriptor:
    """
    外部事件的原始描述（webhook、手动触发、定时器）。
    name 对应 GitHub 的事件名，例如 push / schedule / branch_protection_rule。
    """

    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    delivery_id: Optional[str] = None


@dataclass(frozen=True)
class RunRequest:
    """
    归一化后的运行请求，创建后不可变，一次运行结束即丢弃。
    """

    trigger_kind: TriggerKind
    correlation_id: str
    branch: Optional[str] = None
    reason: str = ""
    created_at: float = field(default_factory=time.time)


@dataclass
class RunResult:
    """
    单次运行的标准输出。

    - artifact_path：扫描结果文件路径（分析失败时可能不存在）
    - failed_step：失败时记录中断在哪一步
    - upload：上传端点返回的回执
    """

    exit_status: ExitStatus
    artifact_path: str
    failed_step: Optional[str] = None
    error: Optional[str] = None
    upload: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.exit_status is ExitStatus.SUCCESS
