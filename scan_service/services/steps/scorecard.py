from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

from scan_service.core.errors import AnalysisError
from scan_service.core.models import RunRequest
from scan_service.services.steps.base import (
    AnalysisResult,
    BaseAnalyzeStep,
    CheckoutResult,
    mask_secret,
    run_command,
)

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("sarif", "json")


class ScorecardAnalyzeStep(BaseAnalyzeStep):
    """
    调用 scorecard CLI 对仓库做安全评估，结果写到固定的 results 文件。

    scorecard 本身的评分逻辑不在本服务范围内，这里只负责调用、落盘和基本校验。
    """

    def __init__(
        self,
        *,
        repository_url: str,
        scorecard_bin: str = "scorecard",
        timeout_s: float = 600.0,
    ) -> None:
        self._url = repository_url
        self._bin = scorecard_bin
        self._timeout = timeout_s

    async def run(
        self,
        *,
        request: RunRequest,
        checkout: CheckoutResult,
        results_path: Path,
        results_format: str,
        token: Optional[str],
    ) -> AnalysisResult:
        if results_format not in SUPPORTED_FORMATS:
            raise AnalysisError(f"Unsupported results format: {results_format}")
        if not token:
            raise AnalysisError("SCORECARD_READ_TOKEN is not set")

        env = dict(os.environ)
        env["GITHUB_AUTH_TOKEN"] = token
        if results_format == "sarif":
            # scorecard 只有在 ENABLE_SARIF=1 时才接受 --format=sarif
            env["ENABLE_SARIF"] = "1"
        args = [
            self._bin,
            f"--repo={self._url}",
            f"--commit={checkout.commit_sha}",
            f"--format={results_format}",
            "--show-details",
        ]

        logger.info(
            "Running scorecard repo=%s commit=%s format=%s correlation_id=%s token=%s",
            self._url,
            checkout.commit_sha,
            results_format,
            request.correlation_id,
            mask_secret(token),
        )
        try:
            code, stdout, stderr = await run_command(
                args, cwd=checkout.path, env=env, timeout_s=self._timeout
            )
        except FileNotFoundError as exc:
            raise AnalysisError(f"scorecard executable not found: {self._bin}") from exc
        except asyncio.TimeoutError as exc:
            raise AnalysisError(f"scorecard timed out after {self._timeout}s") from exc

        if code != 0:
            raise AnalysisError(
                f"scorecard failed (exit {code}): {stderr.decode(errors='replace').strip()}"
            )

        try:
            json.loads(stdout)
        except ValueError as exc:
            raise AnalysisError("scorecard produced output that is not valid JSON") from exc

        try:
            results_path.parent.mkdir(parents=True, exist_ok=True)
            results_path.write_bytes(stdout)
        except OSError as exc:
            raise AnalysisError(f"Cannot write scorecard results to {results_path}: {exc}") from exc
        logger.info("Wrote scorecard results to %s (%d bytes)", results_path, len(stdout))
        return AnalysisResult(artifact_path=results_path, results_format=results_format)
