"""
运行流水线异常定义
"""
from typing import Optional


class StepError(Exception):
    """
    流水线步骤的统一异常，任何一步抛出都会中断后续步骤。
    """

    step: str = "unknown"

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        if step:
            self.step = step
        self.status_code = status_code


class CheckoutError(StepError):
    step = "checkout"


class AnalysisError(StepError):
    step = "analyze"


class UploadError(StepError):
    step = "upload"


class PermissionDeniedError(StepError):
    """
    步骤所需权限超出了作业授予的权限。
    """


class ScheduleConfigError(ValueError):
    """
    cron 表达式等定时配置不合法。
    """
