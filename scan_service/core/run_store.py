from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Dict, Literal, Optional, Tuple

RunStatus = Literal["queued", "running", "succeeded", "failed"]


class RunStore:
    """
    简易内存版运行记录存储，便于查询运行状态。
    以 correlation_id 作为幂等键：同一个 correlation_id 只会对应一条运行记录。
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._runs: Dict[str, Dict[str, Any]] = {}
        # correlation_id -> run_id
        self._idempotency: Dict[str, str] = {}

    async def create_run(
        self, *, request: Dict[str, Any], correlation_id: str
    ) -> Tuple[str, bool]:
        """
        创建运行记录，返回 (run_id, created)。
        correlation_id 已存在时返回已有 run_id，created=False。
        """
        async with self._lock:
            existing = self._idempotency.get(correlation_id)
            if existing and existing in self._runs:
                return existing, False

            run_id = uuid.uuid4().hex
            self._runs[run_id] = {
                "status": "queued",
                "created_at": time.time(),
                "correlation_id": correlation_id,
                "request": request,
            }
            self._idempotency[correlation_id] = run_id
            return run_id, True

    async def mark_running(self, run_id: str) -> None:
        await self._update(run_id, {"status": "running", "updated_at": time.time()})

    async def update_progress(
        self, run_id: str, *, stage: str, percent: int, message: str
    ) -> None:
        await self._update(
            run_id,
            {
                "progress": {"stage": stage, "percent": percent, "message": message},
                "updated_at": time.time(),
            },
        )

    async def succeed(self, run_id: str, result: Dict[str, Any]) -> None:
        await self._update(
            run_id,
            {
                "status": "succeeded",
                "result": result,
                "updated_at": time.time(),
            },
        )

    async def fail(self, run_id: str, error: str, result: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {
            "status": "failed",
            "error": error,
            "updated_at": time.time(),
        }
        if result is not None:
            payload["result"] = result
        await self._update(run_id, payload)

    async def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            if run_id not in self._runs:
                return None
            # 返回副本避免外部修改
            return dict(self._runs[run_id])

    async def find_by_correlation_id(self, correlation_id: str) -> Optional[str]:
        async with self._lock:
            return self._idempotency.get(correlation_id)

    async def _update(self, run_id: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            if run_id not in self._runs:
                return
            self._runs[run_id].update(payload)
