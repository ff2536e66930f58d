from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from scan_service.core.errors import AnalysisError, CheckoutError
from scan_service.core.models import RunRequest, TriggerKind
from scan_service.services.steps.base import CheckoutResult, mask_secret
from scan_service.services.steps.checkout import GitCheckoutStep
from scan_service.services.steps.scorecard import ScorecardAnalyzeStep

REQUEST = RunRequest(trigger_kind=TriggerKind.MANUAL, correlation_id="corr-1")


def test_mask_secret():
    assert mask_secret(None) == "<none>"
    assert mask_secret("short") == "***"
    assert mask_secret("ghp_1234567890abcd") == "ghp_...abcd"


class TestGitCheckoutStep(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.workspace = Path(self._tmp.name) / "runs" / "corr-1"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_clone_does_not_persist_credentials(self) -> None:
        step = GitCheckoutStep(repository_url="https://github.com/example/repo.git")
        run_command = AsyncMock(side_effect=[(0, b"", b""), (0, b"abc123\n", b"")])

        with patch("scan_service.services.steps.checkout.run_command", run_command):
            result = await step.run(
                request=REQUEST, branch="develop", workspace=self.workspace, token="secret-token-value"
            )

        clone_args = run_command.await_args_list[0].args[0]
        self.assertIn("clone", clone_args)
        self.assertEqual(clone_args[clone_args.index("--branch") + 1], "develop")
        self.assertIn("--depth", clone_args)
        self.assertTrue(any(a.startswith("http.extraHeader=AUTHORIZATION: basic ") for a in clone_args))
        self.assertFalse(any("secret-token-value" in a for a in clone_args))
        self.assertEqual(result.commit_sha, "abc123")
        self.assertEqual(result.ref, "refs/heads/develop")
        self.assertEqual(result.path, self.workspace / "repo")

    async def test_clone_failure_raises(self) -> None:
        step = GitCheckoutStep(repository_url="https://github.com/example/repo.git")
        run_command = AsyncMock(return_value=(128, b"", b"fatal: repository not found"))

        with patch("scan_service.services.steps.checkout.run_command", run_command):
            with self.assertRaises(CheckoutError) as ctx:
                await step.run(request=REQUEST, branch="develop", workspace=self.workspace, token=None)

        self.assertIn("repository not found", str(ctx.exception))
        self.assertEqual(run_command.await_count, 1)

    async def test_missing_git_raises(self) -> None:
        step = GitCheckoutStep(repository_url="https://github.com/example/repo.git", git_bin="no-such-git")
        run_command = AsyncMock(side_effect=FileNotFoundError("no-such-git"))

        with patch("scan_service.services.steps.checkout.run_command", run_command):
            with self.assertRaises(CheckoutError):
                await step.run(request=REQUEST, branch="develop", workspace=self.workspace, token=None)

    async def test_stale_clone_is_replaced(self) -> None:
        stale = self.workspace / "repo"
        stale.mkdir(parents=True)
        (stale / "old.txt").write_text("stale", encoding="utf-8")
        step = GitCheckoutStep(repository_url="https://github.com/example/repo.git")
        run_command = AsyncMock(side_effect=[(0, b"", b""), (0, b"abc123\n", b"")])

        with patch("scan_service.services.steps.checkout.run_command", run_command):
            await step.run(request=REQUEST, branch="develop", workspace=self.workspace, token=None)

        self.assertFalse(stale.exists())

    async def test_unusable_workspace_raises_checkout_error(self) -> None:
        blocker = Path(self._tmp.name) / "runs"
        blocker.write_text("not a directory", encoding="utf-8")
        step = GitCheckoutStep(repository_url="https://github.com/example/repo.git")
        run_command = AsyncMock()

        with patch("scan_service.services.steps.checkout.run_command", run_command):
            with self.assertRaises(CheckoutError) as ctx:
                await step.run(request=REQUEST, branch="develop", workspace=self.workspace, token=None)

        self.assertEqual(ctx.exception.step, "checkout")
        run_command.assert_not_awaited()

    async def test_missing_repository_url_raises(self) -> None:
        with self.assertRaises(CheckoutError):
            await GitCheckoutStep(repository_url="").run(
                request=REQUEST, branch="develop", workspace=self.workspace, token=None
            )


class TestScorecardAnalyzeStep(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        repo = Path(self._tmp.name)
        self.checkout = CheckoutResult(path=repo, commit_sha="abc123", ref="refs/heads/develop")
        self.results_path = repo / "results.sarif"
        self.step = ScorecardAnalyzeStep(repository_url="github.com/example/repo")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def _run(self, run_command: AsyncMock, *, results_format: str = "sarif", token: str = "t"):
        with patch("scan_service.services.steps.scorecard.run_command", run_command):
            return await self.step.run(
                request=REQUEST,
                checkout=self.checkout,
                results_path=self.results_path,
                results_format=results_format,
                token=token,
            )

    async def test_writes_results_to_fixed_path(self) -> None:
        sarif = {"version": "2.1.0", "runs": []}
        run_command = AsyncMock(return_value=(0, json.dumps(sarif).encode(), b""))

        result = await self._run(run_command, token="scorecard-token")

        self.assertEqual(result.artifact_path, self.results_path)
        self.assertEqual(json.loads(self.results_path.read_text()), sarif)
        args = run_command.await_args.args[0]
        self.assertIn("--format=sarif", args)
        self.assertIn("--repo=github.com/example/repo", args)
        self.assertEqual(run_command.await_args.kwargs["env"]["GITHUB_AUTH_TOKEN"], "scorecard-token")
        self.assertEqual(run_command.await_args.kwargs["env"]["ENABLE_SARIF"], "1")

    async def test_non_zero_exit_raises(self) -> None:
        with self.assertRaises(AnalysisError):
            await self._run(AsyncMock(return_value=(1, b"", b"rate limited")))
        self.assertFalse(self.results_path.exists())

    async def test_unwritable_results_path_raises_analysis_error(self) -> None:
        blocker = Path(self._tmp.name) / "blocker"
        blocker.write_text("regular file", encoding="utf-8")
        self.results_path = blocker / "results.sarif"

        with self.assertRaises(AnalysisError) as ctx:
            await self._run(AsyncMock(return_value=(0, b"{}", b"")))

        self.assertEqual(ctx.exception.step, "analyze")

    async def test_invalid_output_raises(self) -> None:
        with self.assertRaises(AnalysisError):
            await self._run(AsyncMock(return_value=(0, b"not json", b"")))

    async def test_unsupported_format_raises(self) -> None:
        run_command = AsyncMock()
        with self.assertRaises(AnalysisError):
            await self._run(run_command, results_format="csv")
        run_command.assert_not_awaited()

    async def test_missing_token_raises(self) -> None:
        with self.assertRaises(AnalysisError):
            await self._run(AsyncMock(), token="")


if __name__ == "__main__":
    unittest.main()
