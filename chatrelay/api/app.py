"""
FastAPI 应用装配模块。

create_app() 负责：
1. 装配（或接收外部传入的）存储句柄与轮次编排器，挂到 app.state 上
2. 注册路由和统一的错误响应处理器
3. 在 lifespan 结束时等待后台写入完成，并显式关闭 Redis 连接
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from chatrelay import __version__
from chatrelay.agent.factory import build_orchestrator
from chatrelay.agent.turn import TurnOrchestrator
from chatrelay.api.routes import ApiError, router
from chatrelay.config.schema import Config
from chatrelay.providers.base import GenerationError
from chatrelay.session.keys import ScopeError
from chatrelay.session.store import StoreError, StoreHandle


def _error(status_code: int, reason: str) -> JSONResponse:
    return JSONResponse({"error": True, "reason": reason}, status_code=status_code)


def create_app(
    config: Config,
    handle: StoreHandle | None = None,
    orchestrator: TurnOrchestrator | None = None,
) -> FastAPI:
    """
    创建 HTTP 应用。

    参数:
        config: 全局配置
        handle: 存储句柄（为 None 时与编排器一起按配置创建）
        orchestrator: 轮次编排器（为 None 时按配置创建）
    """
    if orchestrator is None:
        handle, orchestrator = build_orchestrator(config, handle=handle)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"chatrelay API ready (history cap {config.store.max_messages})")
        yield
        if orchestrator.pending_background:
            logger.info(f"Waiting for {orchestrator.pending_background} background write(s)...")
        await orchestrator.drain()
        if handle is not None:
            await handle.close()

    app = FastAPI(title="chatrelay", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.orchestrator = orchestrator

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        return _error(exc.status_code, exc.reason)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = first.get("loc", ["request"])[-1]
        return _error(400, f'Parameter "{field}" is missing or invalid')

    @app.exception_handler(ScopeError)
    async def _scope_error(request: Request, exc: ScopeError):
        return _error(400, str(exc))

    @app.exception_handler(StoreError)
    async def _store_error(request: Request, exc: StoreError):
        logger.error(f"Store failure on {request.url.path}: {exc}")
        return _error(500, str(exc))

    @app.exception_handler(GenerationError)
    async def _generation_error(request: Request, exc: GenerationError):
        logger.error(f"Generation failure on {request.url.path}: {exc}")
        return _error(500, str(exc))

    app.include_router(router)
    return app
