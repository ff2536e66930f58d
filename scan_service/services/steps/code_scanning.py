from __future__ import annotations

import base64
import gzip
import logging
from typing import Any, Dict, Optional

import httpx

from scan_service.core.errors import UploadError
from scan_service.core.models import RunRequest
from scan_service.services.steps.base import (
    AnalysisResult,
    BaseUploadStep,
    CheckoutResult,
    UploadReceipt,
    mask_secret,
)

logger = logging.getLogger(__name__)


class CodeScanningUploadStep(BaseUploadStep):
    """
    把 SARIF 结果推送到代码扫描看板的接收端点。

    - SARIF 内容 gzip + base64 编码后放在 `sarif` 字段
    - correlation_id 同时放在请求体与 `Idempotency-Key` 头中，
      接收端按 correlation_id 做 upsert，重复上传只会留下一条记录
    - 失败不重试，留给下一次定时运行
    """

    def __init__(
        self,
        *,
        upload_url: Optional[str],
        timeout_s: float = 30.0,
        tool_name: str = "scorecard",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = upload_url
        self._timeout = timeout_s
        self._tool_name = tool_name
        self._client = client

    async def run(
        self,
        *,
        request: RunRequest,
        checkout: CheckoutResult,
        analysis: AnalysisResult,
        token: Optional[str],
        id_token: Optional[str],
    ) -> UploadReceipt:
        if not self._url:
            raise UploadError("CODE_SCANNING_UPLOAD_URL is not set")
        if analysis.results_format != "sarif":
            raise UploadError(f"Only sarif results can be uploaded, got {analysis.results_format}")

        try:
            raw = analysis.artifact_path.read_bytes()
        except OSError as exc:
            raise UploadError(f"Cannot read results file {analysis.artifact_path}: {exc}") from exc

        payload: Dict[str, Any] = {
            "commit_sha": checkout.commit_sha,
            "ref": checkout.ref,
            "sarif": base64.b64encode(gzip.compress(raw)).decode("ascii"),
            "tool_name": self._tool_name,
            "correlation_id": request.correlation_id,
            "trigger_kind": request.trigger_kind.value,
        }
        headers = {
            "X-Correlation-ID": request.correlation_id,
            "Idempotency-Key": request.correlation_id,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if id_token:
            headers["X-Id-Token"] = id_token

        logger.info(
            "Uploading results url=%s correlation_id=%s size=%d token=%s",
            self._url,
            request.correlation_id,
            len(raw),
            mask_secret(token),
        )
        try:
            resp = await self._post(payload, headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UploadError(
                f"Upload rejected: HTTP {exc.response.status_code} {exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise UploadError(f"Upload failed: {exc}") from exc

        metadata: Dict[str, Any] = {"upload_url": self._url, "http_status": resp.status_code}
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            metadata["response"] = body
        return UploadReceipt(status_code=resp.status_code, metadata=metadata)

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self._url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._url, json=payload, headers=headers)
