from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from scan_service.core import permissions as perms
from scan_service.core.models import TriggerKind
from scan_service.core.trigger_scheduler import DEFAULT_CRON


class TriggersConfig(BaseModel):
    """
    触发条件：启用的触发类型、定时表达式、监听的推送分支。
    """

    enabled: List[TriggerKind] = Field(default_factory=lambda: list(TriggerKind))
    schedule: str = Field(default=DEFAULT_CRON, description="cron 表达式，UTC")
    push_branches: List[str] = Field(default_factory=lambda: ["develop"])


class StepsConfig(BaseModel):
    """
    三个步骤各自的注册名，对应 services/steps/registry.py。
    """

    checkout: str = "git"
    analyze: str = "scorecard"
    upload: str = "code_scanning"


class ResultsConfig(BaseModel):
    file: str = Field(default="results.sarif", description="结果文件相对检出目录的路径")
    format: Literal["sarif", "json"] = "sarif"


class WorkflowConfigFile(BaseModel):
    """
    从 scan_workflow.yml 解析出的整体配置模型。
    """

    name: str = "scorecards"
    permissions: Dict[str, str] = Field(default_factory=lambda: {"contents": "read"})
    job_permissions: Optional[Dict[str, str]] = Field(
        default=None, description="作业级权限，存在时替换 permissions"
    )
    triggers: TriggersConfig = Field(default_factory=TriggersConfig)
    steps: StepsConfig = Field(default_factory=StepsConfig)
    results: ResultsConfig = Field(default_factory=ResultsConfig)

    @field_validator("permissions", "job_permissions")
    @classmethod
    def _check_permissions(cls, value: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if value is not None:
            perms.normalize(value)
        return value
