from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml

from scan_service.core.manager import WorkflowConfig
from scan_service.core.trigger_scheduler import WeeklySchedule
from scan_service.core.workflow_config_models import WorkflowConfigFile
from scan_service.services.steps.registry import (
    get_analyze_factory,
    get_checkout_factory,
    get_upload_factory,
)

logger = logging.getLogger(__name__)


def load_workflow_config(config_path: Optional[str] = None) -> WorkflowConfig:
    """
    从 scan_workflow.yml 加载触发条件、步骤组合与权限，构建 WorkflowConfig。
    """

    default_path = Path(__file__).resolve().parents[2] / "scan_workflow.yml"
    path = Path(config_path) if config_path else default_path
    if not path.exists():
        raise RuntimeError(f"scan_workflow.yml not found at {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    cfg = WorkflowConfigFile.model_validate(raw or {})

    # 提前校验 cron 表达式，配置错误在启动时暴露
    WeeklySchedule(cfg.triggers.schedule)

    workflow = WorkflowConfig(
        name=cfg.name,
        checkout_factory=get_checkout_factory(cfg.steps.checkout),
        analyze_factory=get_analyze_factory(cfg.steps.analyze),
        upload_factory=get_upload_factory(cfg.steps.upload),
        cron=cfg.triggers.schedule,
        push_branches=list(cfg.triggers.push_branches),
        enabled_triggers=list(cfg.triggers.enabled),
        default_permissions=dict(cfg.permissions),
        job_permissions=dict(cfg.job_permissions) if cfg.job_permissions is not None else None,
        results_file=cfg.results.file,
        results_format=cfg.results.format,
    )
    logger.info(
        "Loaded workflow %s from %s, triggers=%s cron=%s push_branches=%s",
        workflow.name,
        path,
        [k.value for k in workflow.enabled_triggers],
        workflow.cron,
        workflow.push_branches,
    )
    return workflow


def build_default_workflow_config() -> WorkflowConfig:
    """
    代码内置的默认工作流（用于配置缺失时兜底）。
    """

    return WorkflowConfig(
        checkout_factory=get_checkout_factory("git"),
        analyze_factory=get_analyze_factory("scorecard"),
        upload_factory=get_upload_factory("code_scanning"),
    )


def load_workflow_config_or_default(config_path: Optional[str] = None) -> WorkflowConfig:
    """
    加载 scan_workflow.yml；文件缺失或配置错误时告警并回退到内置默认工作流。
    """

    try:
        return load_workflow_config(config_path)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to load scan_workflow.yml, fallback to default workflow: %s", exc)
        return build_default_workflow_config()
