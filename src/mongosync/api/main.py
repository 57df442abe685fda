"""
mongosync - 状态服务
同步运行期间提供只读的状态和指标接口
"""
import threading
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
import uvicorn

from ..config.settings import settings


class ApiResponse(BaseModel):
    """标准API响应"""
    success: bool
    data: Any = None
    message: str = ""
    timestamp: datetime


def create_app(engine_provider: Callable[[], Optional[Any]]) -> FastAPI:
    """创建状态服务，engine_provider返回当前的同步引擎（可能还没有创建）"""
    app = FastAPI(
        title=settings.app_name,
        description="mongosync运行状态",
        version=settings.app_version,
    )

    def current_engine():
        engine = engine_provider()
        if engine is None:
            raise HTTPException(status_code=503, detail="Sync engine is not initialized")
        return engine

    @app.get("/health", response_model=ApiResponse)
    async def health_check():
        """健康检查"""
        engine = engine_provider()
        if engine is None:
            status = "starting"
        elif engine.stopped:
            status = "stopping"
        else:
            status = "running"
        return ApiResponse(
            success=True,
            data={"status": status},
            message="ok",
            timestamp=datetime.utcnow(),
        )

    @app.get("/status", response_model=ApiResponse)
    async def sync_status():
        """同步阶段、位置和版本"""
        engine = current_engine()
        return ApiResponse(
            success=True,
            data=engine.status(),
            timestamp=datetime.utcnow(),
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus格式的指标"""
        engine = current_engine()
        return PlainTextResponse(engine.metrics.export_prometheus_format())

    return app


def serve_in_background(app: FastAPI, host: str, port: int) -> threading.Thread:
    """在守护线程中启动uvicorn"""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="status-server", daemon=True)
    thread.start()
    return thread
