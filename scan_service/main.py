import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from scan_service.config import get_settings

load_dotenv()

# 配置日志级别（确保能看到 INFO 级别的运行日志）
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)

from scan_service.api import routes  # noqa: E402
from scan_service.core.models import TriggerKind  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    schedule_on = settings.SCHEDULE_ENABLED and TriggerKind.SCHEDULE in routes.workflow.enabled_triggers
    if schedule_on:
        await routes.schedule_runner.start()
    try:
        yield
    finally:
        if schedule_on:
            await routes.schedule_runner.stop()


def create_app() -> FastAPI:
    """
    创建 FastAPI 应用，并挂载路由与定时触发器。
    """
    app = FastAPI(
        title="Scorecard Scan Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    # 预加载配置，启动时如果 .env 有问题可以尽早暴露
    get_settings()

    # 统一挂载 API 路由
    app.include_router(routes.router, prefix="/api")

    @app.get("/health", summary="健康检查")
    async def health_check():
        return {"status": "ok"}

    return app


app = create_app()
