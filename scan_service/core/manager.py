from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from scan_service.config import Settings
from scan_service.core import permissions
from scan_service.core.errors import PermissionDeniedError, StepError
from scan_service.core.models import ExitStatus, RunRequest, RunResult, TriggerKind
from scan_service.core.trigger_scheduler import DEFAULT_CRON
from scan_service.services.steps.registry import AnalyzeFactory, CheckoutFactory, UploadFactory

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str, int, str], Awaitable[None]]

DEFAULT_PERMISSIONS: Dict[str, str] = {"contents": "read"}
JOB_PERMISSIONS: Dict[str, str] = {
    "actions": "read",
    "contents": "read",
    "security-events": "write",
    "id-token": "write",
}


@dataclass
class WorkflowConfig:
    """
    一条扫描工作流的组合配置：触发条件 + 三个步骤 + 权限 + 结果文件。
    """

    checkout_factory: CheckoutFactory
    analyze_factory: AnalyzeFactory
    upload_factory: UploadFactory
    name: str = "scorecards"
    cron: str = DEFAULT_CRON
    push_branches: List[str] = field(default_factory=lambda: ["develop"])
    enabled_triggers: List[TriggerKind] = field(default_factory=lambda: list(TriggerKind))
    default_permissions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PERMISSIONS))
    job_permissions: Optional[Dict[str, str]] = field(default_factory=lambda: dict(JOB_PERMISSIONS))
    results_file: str = "results.sarif"
    results_format: str = "sarif"

    @property
    def granted_permissions(self) -> Dict[str, str]:
        # 作业级 permissions 存在时整体替换默认权限
        if self.job_permissions is not None:
            return permissions.normalize(self.job_permissions)
        return permissions.normalize(self.default_permissions)


@dataclass
class Credentials:
    """
    各步骤使用的凭证，按权限范围拆分；repr 中不展示明文。
    """

    repo_token: Optional[str] = field(default=None, repr=False)
    scorecard_token: Optional[str] = field(default=None, repr=False)
    upload_token: Optional[str] = field(default=None, repr=False)
    id_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Credentials":
        return cls(
            repo_token=settings.REPO_READ_TOKEN,
            scorecard_token=settings.SCORECARD_READ_TOKEN,
            upload_token=settings.CODE_SCANNING_TOKEN,
            id_token=settings.ID_TOKEN,
        )


def _safe_dirname(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", value)[:128] or "run"


class RunManager:
    """
    负责按 checkout -> analyze -> upload 的顺序执行一次扫描。

    - 同一时刻只执行一个运行（asyncio.Lock）
    - 任一步骤失败立即中止后续步骤，不重试、不保留部分结果
    - 每个步骤执行前校验权限，只传入该步骤权限范围内的凭证
    """

    def __init__(
        self,
        *,
        workflow: WorkflowConfig,
        settings: Settings,
        credentials: Optional[Credentials] = None,
    ) -> None:
        self.workflow = workflow
        self._settings = settings
        self._credentials = credentials or Credentials.from_settings(settings)
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, request: RunRequest, *, progress: ProgressFn | None = None) -> RunResult:
        async def _noop(stage: str, percent: int, message: str) -> None:
            _ = stage
            _ = percent
            _ = message

        report = progress or _noop
        workspace = Path(self._settings.WORKSPACE_DIR) / "runs" / _safe_dirname(request.correlation_id)
        async with self._lock:
            try:
                return await self._run_steps(request, report, workspace)
            finally:
                # 检出目录与结果文件不跨运行保留
                await self._cleanup(workspace)

    @property
    def results_file(self) -> str:
        return self._settings.RESULTS_FILE or self.workflow.results_file

    async def _run_steps(self, request: RunRequest, report: ProgressFn, workspace: Path) -> RunResult:
        wf = self.workflow
        creds = self._credentials
        branch = request.branch or self._settings.DEFAULT_BRANCH
        results_file = self.results_file
        artifact_path = workspace / "repo" / results_file
        step_name = "checkout"

        logger.info(
            "run event=start correlation_id=%s trigger=%s branch=%s reason=%s",
            request.correlation_id,
            request.trigger_kind.value,
            branch,
            request.reason,
        )
        try:
            checkout_step = wf.checkout_factory(self._settings)
            self._authorize(checkout_step.name, checkout_step.required_permissions)
            await report("checkout", 10, f"检出 {branch}")
            checkout = await checkout_step.run(
                request=request,
                branch=branch,
                workspace=workspace,
                token=creds.repo_token,
            )
            artifact_path = checkout.path / results_file

            step_name = "analyze"
            analyze_step = wf.analyze_factory(self._settings)
            self._authorize(analyze_step.name, analyze_step.required_permissions)
            await report("analyze", 40, "执行 scorecard 分析")
            analysis = await analyze_step.run(
                request=request,
                checkout=checkout,
                results_path=artifact_path,
                results_format=wf.results_format,
                token=creds.scorecard_token,
            )

            step_name = "upload"
            upload_step = wf.upload_factory(self._settings)
            self._authorize(upload_step.name, upload_step.required_permissions)
            await report("upload", 80, "上传结果到代码扫描看板")
            receipt = await upload_step.run(
                request=request,
                checkout=checkout,
                analysis=analysis,
                token=creds.upload_token,
                id_token=creds.id_token,
            )
        except StepError as exc:
            failed_step = exc.step if exc.step != "unknown" else step_name
            logger.error(
                "run event=failed correlation_id=%s step=%s error=%s",
                request.correlation_id,
                failed_step,
                exc,
            )
            await report("failed", 100, f"{failed_step} 失败：{exc}")
            return RunResult(
                exit_status=ExitStatus.FAILURE,
                artifact_path=str(artifact_path),
                failed_step=failed_step,
                error=str(exc),
            )

        await report("done", 100, "处理完成")
        logger.info(
            "run event=succeeded correlation_id=%s commit=%s artifact=%s",
            request.correlation_id,
            checkout.commit_sha,
            analysis.artifact_path,
        )
        return RunResult(
            exit_status=ExitStatus.SUCCESS,
            artifact_path=str(analysis.artifact_path),
            upload={"status_code": receipt.status_code, **receipt.metadata},
        )

    def _authorize(self, step: str, required: Mapping[str, str]) -> None:
        lacking = permissions.missing(self.workflow.granted_permissions, required)
        if lacking:
            raise PermissionDeniedError(
                f"Step {step} requires permissions not granted to the job: {lacking}",
                step=step,
            )

    async def _cleanup(self, workspace: Path) -> None:
        if not workspace.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, workspace)
        except OSError as exc:
            logger.warning("Failed to remove workspace=%s: %s", workspace, exc)
