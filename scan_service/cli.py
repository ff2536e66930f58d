"""
命令行入口：在 CI runner 或本地直接执行一次扫描。

用法示例：
    python -m scan_service.cli run --branch develop
    python -m scan_service.cli next-fire
    python -m scan_service.cli serve --port 8000

运行失败（任一步骤失败）时以非零退出码结束，便于调用方感知。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv

from scan_service.config import get_settings
from scan_service.core.manager import RunManager
from scan_service.core.models import EventDescriptor
from scan_service.core.run_store import RunStore
from scan_service.core.trigger_scheduler import TriggerScheduler, WeeklySchedule
from scan_service.core.workflow_loader import load_workflow_config_or_default
from scan_service.services.triggers.service import TriggerService

logger = logging.getLogger("scan_service.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scorecard 扫描服务命令行")
    parser.add_argument(
        "--config",
        help="scan_workflow.yml 路径，默认使用仓库根目录下的文件",
    )
    parser.add_argument("--verbose", action="store_true", help="输出 DEBUG 日志")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="手动触发并同步执行一次扫描")
    run.add_argument("--branch", help="要扫描的分支，默认 DEFAULT_BRANCH")
    run.add_argument("--correlation-id", help="幂等 ID，默认自动生成")

    sub.add_parser("next-fire", help="打印下一次定时触发时间")

    serve = sub.add_parser("serve", help="启动 HTTP 服务（含定时触发）")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


async def _run_once(args: argparse.Namespace) -> int:
    settings = get_settings()
    workflow = load_workflow_config_or_default(args.config or settings.WORKFLOW_CONFIG_PATH)
    service = TriggerService(
        scheduler=TriggerScheduler(
            schedule=WeeklySchedule(workflow.cron),
            push_branches=workflow.push_branches,
            enabled_kinds=workflow.enabled_triggers,
        ),
        run_store=RunStore(),
        run_manager=RunManager(workflow=workflow, settings=settings),
    )

    payload = {}
    if args.branch:
        payload["branch"] = args.branch
    if args.correlation_id:
        payload["correlation_id"] = args.correlation_id

    result = await service.submit_and_wait(EventDescriptor(name="workflow_dispatch", payload=payload))
    if result is None:
        logger.error("Manual run was not accepted (disabled trigger or crashed run)")
        return 1

    print(
        json.dumps(
            {
                "exit_status": result.exit_status.value,
                "artifact_path": result.artifact_path,
                "failed_step": result.failed_step,
                "error": result.error,
            },
            ensure_ascii=False,
            indent=2,
        )
    )
    return 0 if result.ok else 1


def _next_fire(args: argparse.Namespace) -> int:
    settings = get_settings()
    workflow = load_workflow_config_or_default(args.config or settings.WORKFLOW_CONFIG_PATH)
    schedule = WeeklySchedule(workflow.cron)
    print(schedule.next_fire_time(datetime.now(timezone.utc)).isoformat())
    return 0


def _serve(args: argparse.Namespace) -> int:
    if args.config:
        # 应用在 uvicorn 导入时读取配置
        os.environ["WORKFLOW_CONFIG_PATH"] = args.config
    uvicorn.run("scan_service.main:app", host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command == "next-fire":
        return _next_fire(args)
    if args.command == "serve":
        return _serve(args)
    return asyncio.run(_run_once(args))


if __name__ == "__main__":
    sys.exit(main())
