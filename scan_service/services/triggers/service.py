from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from scan_service.core.manager import RunManager
from scan_service.core.models import EventDescriptor, RunRequest, RunResult
from scan_service.core.run_store import RunStore
from scan_service.core.trigger_scheduler import TriggerScheduler

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    run_id: str
    request: RunRequest
    created: bool


class TriggerService:
    """
    触发层统一服务：负责事件分类、幂等、创建运行记录、启动后台执行，并将结果写回 RunStore。
    """

    def __init__(
        self,
        *,
        scheduler: TriggerScheduler,
        run_store: RunStore,
        run_manager: RunManager,
    ) -> None:
        self.scheduler = scheduler
        self._runs = run_store
        self._manager = run_manager
        self._inflight: Dict[str, "asyncio.Task[Optional[RunResult]]"] = {}

    async def submit(self, event: EventDescriptor) -> Optional[Submission]:
        """
        分类事件并异步执行，返回 Submission；事件无法分类时返回 None（不创建运行）。

        同一个 correlation_id 重复提交返回已有的 run_id，不会再次执行。
        """
        request = self.scheduler.classify(event)
        if request is None:
            return None

        run_id, created = await self._runs.create_run(
            request=self._serialize_request(request),
            correlation_id=request.correlation_id,
        )
        if not created:
            logger.info(
                "Duplicate submission correlation_id=%s, reusing run_id=%s",
                request.correlation_id,
                run_id,
            )
            return Submission(run_id=run_id, request=request, created=False)

        await self._runs.update_progress(run_id, stage="queued", percent=0, message="运行已进入队列")
        task = asyncio.create_task(self._run(run_id, request))
        self._inflight[run_id] = task
        task.add_done_callback(lambda _t, rid=run_id: self._inflight.pop(rid, None))
        return Submission(run_id=run_id, request=request, created=True)

    async def wait(self, run_id: str) -> Optional[RunResult]:
        """
        等待后台运行结束；运行已结束或不存在时返回 None。
        """
        task = self._inflight.get(run_id)
        if task is None:
            return None
        return await task

    async def submit_and_wait(self, event: EventDescriptor) -> Optional[RunResult]:
        submission = await self.submit(event)
        if submission is None or not submission.created:
            return None
        return await self.wait(submission.run_id)

    async def _run(self, run_id: str, request: RunRequest) -> Optional[RunResult]:
        try:
            await self._runs.mark_running(run_id)

            async def progress(stage: str, percent: int, message: str) -> None:
                await self._runs.update_progress(
                    run_id, stage=stage, percent=percent, message=message
                )

            result = await self._manager.run(request, progress=progress)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Run crashed run_id=%s correlation_id=%s", run_id, request.correlation_id
            )
            await self._runs.fail(run_id, str(exc))
            return None

        serialized = self._serialize_result(result)
        if result.ok:
            await self._runs.succeed(run_id, serialized)
        else:
            await self._runs.fail(run_id, result.error or "run failed", serialized)
        return result

    def _serialize_request(self, request: RunRequest) -> Dict[str, Any]:
        data = asdict(request)
        data["trigger_kind"] = request.trigger_kind.value
        return data

    def _serialize_result(self, result: RunResult) -> Dict[str, Any]:
        return {
            "exit_status": result.exit_status.value,
            "artifact_path": result.artifact_path,
            "failed_step": result.failed_step,
            "error": result.error,
            "upload": result.upload,
        }
