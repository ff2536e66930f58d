from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Header, HTTPException, status
from pydantic import BaseModel, Field

from scan_service.config import get_settings
from scan_service.core.manager import RunManager
from scan_service.core.models import EventDescriptor, TriggerKind
from scan_service.core.run_store import RunStatus, RunStore
from scan_service.core.trigger_scheduler import ScheduleStateStore, TriggerScheduler, WeeklySchedule
from scan_service.core.workflow_loader import load_workflow_config_or_default
from scan_service.services.triggers.cron import ScheduleRunner
from scan_service.services.triggers.service import Submission, TriggerService

router = APIRouter()


class DispatchRequest(BaseModel):
    branch: Optional[str] = Field(default=None, description="要扫描的分支，缺省为默认分支")
    correlation_id: Optional[str] = Field(default=None, description="幂等 ID，缺省自动生成")


class EventRequest(BaseModel):
    name: str = Field(..., description="事件名，如 push / schedule / branch_protection_rule")
    payload: Dict[str, Any] = Field(default_factory=dict)
    delivery_id: Optional[str] = Field(default=None, description="外部投递 ID，用作 correlation_id")


class RunAccepted(BaseModel):
    run_id: str
    correlation_id: str
    trigger_kind: TriggerKind
    duplicate: bool = False
    status: str = "accepted"


class RunStatusResponse(BaseModel):
    run_id: str
    status: RunStatus
    correlation_id: str
    request: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    progress: Optional[Dict[str, Any]] = None
    created_at: float
    updated_at: Optional[float] = None


class ScheduleInfo(BaseModel):
    cron: str
    next_fire_time: str
    last_fired: Optional[str] = None
    enabled: bool


settings = get_settings()

# 配置文件缺失/配置错误时兜底（便于本地快速启动），同时打印告警
workflow = load_workflow_config_or_default(settings.WORKFLOW_CONFIG_PATH)

run_store = RunStore()
run_manager = RunManager(workflow=workflow, settings=settings)
trigger_scheduler = TriggerScheduler(
    schedule=WeeklySchedule(workflow.cron),
    push_branches=workflow.push_branches,
    enabled_kinds=workflow.enabled_triggers,
)
trigger_service = TriggerService(
    scheduler=trigger_scheduler, run_store=run_store, run_manager=run_manager
)
schedule_runner = ScheduleRunner(
    schedule=trigger_scheduler.schedule,
    state=ScheduleStateStore(settings.SCHEDULE_STATE_PATH),
    trigger_service=trigger_service,
    tick_seconds=settings.SCHEDULE_TICK_SECONDS,
)


def _accepted(submission: Submission) -> RunAccepted:
    return RunAccepted(
        run_id=submission.run_id,
        correlation_id=submission.request.correlation_id,
        trigger_kind=submission.request.trigger_kind,
        duplicate=not submission.created,
    )


@router.get("/ping", summary="简单连通性测试")
async def ping() -> Dict[str, str]:
    return {"message": "pong"}


@router.post(
    "/runs/dispatch",
    summary="手动触发一次扫描",
    response_model=RunAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def dispatch_run(payload: DispatchRequest) -> RunAccepted:
    event_payload: Dict[str, Any] = {}
    if payload.branch:
        event_payload["branch"] = payload.branch
    if payload.correlation_id:
        event_payload["correlation_id"] = payload.correlation_id

    submission = await trigger_service.submit(
        EventDescriptor(name="workflow_dispatch", payload=event_payload)
    )
    if submission is None:
        raise HTTPException(status_code=400, detail="Manual dispatch is disabled or invalid")
    return _accepted(submission)


@router.post(
    "/events",
    summary="提交通用事件",
    response_model=RunAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_event(payload: EventRequest) -> RunAccepted:
    submission = await trigger_service.submit(
        EventDescriptor(name=payload.name, payload=payload.payload, delivery_id=payload.delivery_id)
    )
    if submission is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"accepted": False, "reason": f"Event {payload.name!r} could not be classified"},
        )
    return _accepted(submission)


@router.post("/github/webhook", summary="GitHub webhook 回调")
async def github_webhook(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    x_github_event: Optional[str] = Header(default=None),
    x_github_delivery: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    if not x_github_event:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

    submission = await trigger_service.submit(
        EventDescriptor(name=x_github_event, payload=payload or {}, delivery_id=x_github_delivery)
    )
    if submission is None:
        # 已接收但不处理，避免 webhook 重试风暴；详细原因留日志
        return {"accepted": False}
    return {"accepted": True, **_accepted(submission).model_dump(mode="json")}


@router.get(
    "/runs/{run_id}",
    summary="查询运行状态",
    response_model=RunStatusResponse,
)
async def get_run_status(run_id: str) -> RunStatusResponse:
    run = await run_store.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    return RunStatusResponse(
        run_id=run_id,
        status=run["status"],
        correlation_id=run["correlation_id"],
        request=run.get("request") or {},
        result=run.get("result"),
        error=run.get("error"),
        progress=run.get("progress"),
        created_at=run.get("created_at", 0.0),
        updated_at=run.get("updated_at"),
    )


@router.get("/schedule", summary="查询定时触发信息", response_model=ScheduleInfo)
async def get_schedule() -> ScheduleInfo:
    last = schedule_runner.last_fired()
    return ScheduleInfo(
        cron=schedule_runner.schedule.expression,
        next_fire_time=schedule_runner.next_fire_time().isoformat(),
        last_fired=last.isoformat() if last else None,
        enabled=settings.SCHEDULE_ENABLED and TriggerKind.SCHEDULE in workflow.enabled_triggers,
    )
