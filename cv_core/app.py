"""
CraftVillages FastAPI 主应用
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder

from cv_core import __version__
from cv_core.config import Settings, get_settings
from cv_core.utils.logger import setup_logging, get_logger
from cv_core.utils.errors import CraftVillagesException
from cv_core.database import DatabaseManager, get_db_manager
from cv_core.middleware.logging import LoggingMiddleware
from cv_core.tasks.scheduler import TaskScheduler
from cv_core.api import api_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    db_manager: DatabaseManager = app.state.db_manager
    settings: Settings = app.state.settings
    scheduler: Optional[TaskScheduler] = None

    logger.info("Starting CraftVillages application", version=__version__)

    db_healthy = await db_manager.check_connection()
    if not db_healthy:
        logger.error("Database connection check failed")
        raise RuntimeError("Database connection failed")

    if settings.scheduler_enabled:
        scheduler = TaskScheduler(db_manager, settings)
        await scheduler.start()
    app.state.scheduler = scheduler

    logger.info("CraftVillages application started successfully")

    yield

    logger.info("Shutting down CraftVillages application")
    try:
        if scheduler is not None:
            await scheduler.shutdown()
    finally:
        await db_manager.close()
    logger.info("CraftVillages application shutdown complete")


def create_app(
    db_manager: Optional[DatabaseManager] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """创建 FastAPI 应用"""
    settings = settings or (db_manager.settings if db_manager else get_settings())
    db_manager = db_manager or get_db_manager()

    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format
    )

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="CraftVillages Multi-vendor Marketplace API",
        docs_url="/docs" if settings.api_debug else None,
        redoc_url="/redoc" if settings.api_debug else None,
        openapi_url="/openapi.json" if settings.api_debug else None,
        lifespan=lifespan,
    )
    app.state.db_manager = db_manager
    app.state.settings = settings
    app.state.scheduler = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.api_debug else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.exception_handler(CraftVillagesException)
    async def craftvillages_exception_handler(request: Request, exc: CraftVillagesException):
        """处理业务异常"""
        if exc.status >= 500:
            logger.error("Service error", code=exc.code, path=request.url.path)
        else:
            logger.info("Request rejected", code=exc.code, status=exc.status, path=request.url.path)
        return exc.to_response(request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理 Pydantic 验证异常"""
        logger.warning("Request validation failed", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(
            status_code=422,
            content={
                "ok": False,
                "error": {
                    "type": "about:blank",
                    "title": "Validation Error",
                    "status": 422,
                    "detail": "Request validation failed",
                    "code": "VALIDATION_ERROR",
                    "validation_errors": jsonable_encoder(exc.errors())
                }
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理 FastAPI HTTP 异常"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "ok": False,
                "error": {
                    "type": "about:blank",
                    "title": exc.detail,
                    "status": exc.status_code,
                    "detail": exc.detail,
                    "code": f"HTTP_{exc.status_code}"
                }
            }
        )

    @app.exception_handler(500)
    async def internal_server_error_handler(request: Request, exc: Exception):
        """处理未捕获的服务器错误"""
        logger.error("Unhandled server error", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "error": {
                    "type": "about:blank",
                    "title": "Internal Server Error",
                    "status": 500,
                    "detail": "An internal server error occurred",
                    "code": "INTERNAL_SERVER_ERROR"
                }
            }
        )

    @app.get("/healthz")
    async def health_check(request: Request):
        """健康检查端点"""
        db_ok = await request.app.state.db_manager.check_connection()
        return {"status": "healthy" if db_ok else "degraded", "database": db_ok}

    return app


# 创建应用实例
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "cv_core.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
    )
