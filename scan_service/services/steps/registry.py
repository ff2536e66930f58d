from __future__ import annotations

from typing import Callable, Dict

from scan_service.config import Settings
from scan_service.services.steps.base import BaseAnalyzeStep, BaseCheckoutStep, BaseUploadStep
from scan_service.services.steps.checkout import GitCheckoutStep
from scan_service.services.steps.code_scanning import CodeScanningUploadStep
from scan_service.services.steps.scorecard import ScorecardAnalyzeStep


CheckoutFactory = Callable[[Settings], BaseCheckoutStep]
AnalyzeFactory = Callable[[Settings], BaseAnalyzeStep]
UploadFactory = Callable[[Settings], BaseUploadStep]


def _make_git_checkout(settings: Settings) -> BaseCheckoutStep:
    return GitCheckoutStep(
        repository_url=settings.REPOSITORY_URL,
        timeout_s=settings.STEP_TIMEOUT_S,
    )


def _make_scorecard(settings: Settings) -> BaseAnalyzeStep:
    return ScorecardAnalyzeStep(
        repository_url=settings.REPOSITORY_URL,
        scorecard_bin=settings.SCORECARD_BIN,
        timeout_s=settings.STEP_TIMEOUT_S,
    )


def _make_code_scanning_upload(settings: Settings) -> BaseUploadStep:
    return CodeScanningUploadStep(
        upload_url=settings.CODE_SCANNING_UPLOAD_URL,
        timeout_s=settings.UPLOAD_TIMEOUT_S,
    )


CHECKOUT_REGISTRY: Dict[str, CheckoutFactory] = {"git": _make_git_checkout}
ANALYZE_REGISTRY: Dict[str, AnalyzeFactory] = {"scorecard": _make_scorecard}
UPLOAD_REGISTRY: Dict[str, UploadFactory] = {"code_scanning": _make_code_scanning_upload}


def get_checkout_factory(name: str) -> CheckoutFactory:
    try:
        return CHECKOUT_REGISTRY[name]
    except KeyError as exc:  # noqa: B904
        raise ValueError(f"Unknown checkout step: {name}") from exc


def get_analyze_factory(name: str) -> AnalyzeFactory:
    try:
        return ANALYZE_REGISTRY[name]
    except KeyError as exc:  # noqa: B904
        raise ValueError(f"Unknown analyze step: {name}") from exc


def get_upload_factory(name: str) -> UploadFactory:
    try:
        return UPLOAD_REGISTRY[name]
    except KeyError as exc:  # noqa: B904
        raise ValueError(f"Unknown upload step: {name}") from exc
