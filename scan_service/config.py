from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    全局配置，从 .env 中读取。
    """

    # 被扫描的仓库
    REPOSITORY_URL: str = ""
    DEFAULT_BRANCH: str = "develop"

    # 凭证：各步骤只拿到自己权限范围内的那一个
    REPO_READ_TOKEN: str | None = None
    SCORECARD_READ_TOKEN: str | None = None
    CODE_SCANNING_TOKEN: str | None = None
    ID_TOKEN: str | None = None

    # 代码扫描结果上传端点
    CODE_SCANNING_UPLOAD_URL: str | None = None
    UPLOAD_TIMEOUT_S: float = 30.0

    # 执行环境
    WORKSPACE_DIR: str = ".scan_workspace"
    # 设置后覆盖 scan_workflow.yml 中的 results.file
    RESULTS_FILE: str | None = None
    SCORECARD_BIN: str = "scorecard"
    STEP_TIMEOUT_S: float = 600.0

    # 定时触发
    SCHEDULE_ENABLED: bool = True
    SCHEDULE_STATE_PATH: str = ".scan_workspace/schedule_state.json"
    SCHEDULE_TICK_SECONDS: int = 60

    # 工作流配置文件（为空时使用仓库根目录的 scan_workflow.yml）
    WORKFLOW_CONFIG_PATH: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    获取全局单例配置实例。
    """
    return Settings()
