from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from scan_service.core.models import RunRequest

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    """
    检出步骤的输出：本地路径 + 提交信息，供分析与上传步骤使用。
    """

    path: Path
    commit_sha: str
    ref: str


@dataclass
class AnalysisResult:
    artifact_path: Path
    results_format: str


@dataclass
class UploadReceipt:
    """
    上传端点的回执。metadata 中可以包含外部系统返回的 id/url 等。
    """

    status_code: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class BaseCheckoutStep(ABC):
    """
    检出步骤抽象：把仓库指定分支拉到本地工作区。
    """

    name = "checkout"
    required_permissions: Mapping[str, str] = {"contents": "read"}

    @abstractmethod
    async def run(
        self,
        *,
        request: RunRequest,
        branch: str,
        workspace: Path,
        token: Optional[str],
    ) -> CheckoutResult:
        raise NotImplementedError


class BaseAnalyzeStep(ABC):
    """
    分析步骤抽象：对检出的仓库执行扫描，把结果写到固定路径。
    """

    name = "analyze"
    required_permissions: Mapping[str, str] = {"contents": "read", "actions": "read"}

    @abstractmethod
    async def run(
        self,
        *,
        request: RunRequest,
        checkout: CheckoutResult,
        results_path: Path,
        results_format: str,
        token: Optional[str],
    ) -> AnalysisResult:
        raise NotImplementedError


class BaseUploadStep(ABC):
    """
    上传步骤抽象：把结果文件推送到代码扫描看板。
    """

    name = "upload"
    required_permissions: Mapping[str, str] = {
        "contents": "read",
        "security-events": "write",
        "id-token": "write",
    }

    @abstractmethod
    async def run(
        self,
        *,
        request: RunRequest,
        checkout: CheckoutResult,
        analysis: AnalysisResult,
        token: Optional[str],
        id_token: Optional[str],
    ) -> UploadReceipt:
        raise NotImplementedError


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "<none>"
    # 打码显示（前4后4）
    return f"{value[:4]}...{value[-4:]}" if len(value) > 8 else "***"


async def run_command(
    args: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout_s: float,
) -> Tuple[int, bytes, bytes]:
    """
    执行外部命令并返回 (returncode, stdout, stderr)。

    超时会终止子进程并抛出 asyncio.TimeoutError；命令不存在时抛出 FileNotFoundError。
    """
    # 参数中可能带凭证，只记录可执行文件名
    logger.debug("Running command %s cwd=%s", args[0], cwd)
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode or 0, stdout, stderr
