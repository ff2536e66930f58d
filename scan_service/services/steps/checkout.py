from __future__ import annotations

import asyncio
import base64
import logging
import shutil
from pathlib import Path
from typing import List, Optional

from scan_service.core.errors import CheckoutError
from scan_service.core.models import RunRequest
from scan_service.services.steps.base import (
    BaseCheckoutStep,
    CheckoutResult,
    mask_secret,
    run_command,
)

logger = logging.getLogger(__name__)


class GitCheckoutStep(BaseCheckoutStep):
    """
    使用 git 浅克隆检出仓库。

    - 凭证只通过 `git -c http.extraHeader=...` 作用于单条命令，不写入 .git/config
      （等价于 persist-credentials: false）
    - 每次运行都清空目标目录，重复运行同一个 correlation_id 结果一致
    """

    def __init__(
        self,
        *,
        repository_url: str,
        git_bin: str = "git",
        timeout_s: float = 600.0,
    ) -> None:
        self._url = repository_url
        self._git = git_bin
        self._timeout = timeout_s

    async def run(
        self,
        *,
        request: RunRequest,
        branch: str,
        workspace: Path,
        token: Optional[str],
    ) -> CheckoutResult:
        if not self._url:
            raise CheckoutError("REPOSITORY_URL is not set")

        dest = workspace / "repo"
        try:
            if dest.exists():
                await asyncio.to_thread(shutil.rmtree, dest)
            workspace.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CheckoutError(f"Cannot prepare workspace {workspace}: {exc}") from exc

        args: List[str] = [self._git]
        if token:
            basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
            args += ["-c", f"http.extraHeader=AUTHORIZATION: basic {basic}"]
        args += ["clone", "--depth", "1", "--no-tags", "--branch", branch, self._url, str(dest)]

        logger.info(
            "Checking out repo=%s branch=%s correlation_id=%s token=%s",
            self._url,
            branch,
            request.correlation_id,
            mask_secret(token),
        )
        code, _, stderr = await self._git_call(args, cwd=workspace)
        if code != 0:
            raise CheckoutError(
                f"git clone failed (exit {code}): {stderr.decode(errors='replace').strip()}"
            )

        code, stdout, stderr = await self._git_call([self._git, "rev-parse", "HEAD"], cwd=dest)
        if code != 0:
            raise CheckoutError(
                f"git rev-parse failed (exit {code}): {stderr.decode(errors='replace').strip()}"
            )
        commit_sha = stdout.decode().strip()
        logger.info("Checked out commit=%s branch=%s", commit_sha, branch)
        return CheckoutResult(path=dest, commit_sha=commit_sha, ref=f"refs/heads/{branch}")

    async def _git_call(self, args: List[str], *, cwd: Path):
        try:
            return await run_command(args, cwd=cwd, timeout_s=self._timeout)
        except FileNotFoundError as exc:
            raise CheckoutError(f"git executable not found: {self._git}") from exc
        except asyncio.TimeoutError as exc:
            raise CheckoutError(f"git timed out after {self._timeout}s") from exc
