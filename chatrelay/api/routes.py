"""
HTTP 路由模块 —— 对外暴露对话、历史查询/清理和健康检查接口。

接口一览：
- GET|POST /health          健康检查（无需认证）
- POST     /chat            对话；默认流式输出 text/plain，带 ?nostreaming 时返回 JSON
- GET      /history         读取会话历史
- DELETE   /history         按作用域清理会话历史

除 /health 外所有接口都要求 X-API-KEY 请求头。
错误统一返回 {"error": true, "reason": "..."}；
流式输出一旦开始，错误只能以 "\\n[error] ..." 标记写在响应体末尾。
"""

import secrets
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import ValidationError

from chatrelay.agent.turn import TurnOrchestrator
from chatrelay.api.models import (
    ChatReplyResponse,
    ChatRequest,
    ClearHistoryResponse,
    HistoryResponse,
    MessageItem,
)
from chatrelay.utils.helpers import truncate_string


class ApiError(Exception):
    """带 HTTP 状态码的接口错误，由 app 中的异常处理器转换为统一的错误响应。"""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(reason)


def require_api_key(request: Request) -> None:
    """校验 X-API-KEY 请求头。"""
    expected = request.app.state.config.server.api_key
    provided = request.headers.get("X-API-KEY")
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        raise ApiError(401, "Unauthorized: invalid or missing X-API-KEY header")


def _orchestrator(request: Request) -> TurnOrchestrator:
    return request.app.state.orchestrator


def _describe_validation_error(error: ValidationError) -> str:
    """把 Pydantic 校验错误转换成面向调用方的一句话。"""
    first = error.errors()[0]
    field = ".".join(str(p) for p in first["loc"]) or "body"
    if field in ("message", "userId"):
        return f'Field "{field}" is required and must be a non-empty string'
    return f'Field "{field}" must be a string'


router = APIRouter()
protected = APIRouter(dependencies=[Depends(require_api_key)])


@router.api_route("/health", methods=["GET", "POST", "HEAD"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@protected.post("/chat")
async def chat(request: Request):
    try:
        payload: Any = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        raise ApiError(400, "Invalid JSON payload")

    try:
        req = ChatRequest.model_validate(payload)
    except ValidationError as e:
        raise ApiError(400, _describe_validation_error(e))

    orchestrator = _orchestrator(request)
    logger.info(f"Chat turn for {req.user_id}: {truncate_string(req.message, 80)}")

    if "nostreaming" in request.query_params:
        reply = await orchestrator.run_turn(req.user_id, req.message, req.domain, req.category)
        return ChatReplyResponse(reply=reply)

    # 历史读取在响应开始之前完成：读取失败仍然可以返回 500
    turn = await orchestrator.open_stream(req.user_id, req.message, req.domain, req.category)
    return StreamingResponse(turn, media_type="text/plain; charset=utf-8")


@protected.get("/history", response_model=HistoryResponse)
async def get_history(
    request: Request,
    userId: str,
    domain: str | None = None,
    category: str | None = None,
):
    store = _orchestrator(request).store
    messages = await store.get_history(userId, domain, category)
    ttl = await store.ttl(userId, domain, category)
    return HistoryResponse(
        messages=[MessageItem(role=m.role, content=m.content) for m in messages],
        ttl=ttl,
    )


@protected.delete("/history", response_model=ClearHistoryResponse)
async def clear_history(
    request: Request,
    userId: str,
    domain: str | None = None,
    category: str | None = None,
):
    removed = await _orchestrator(request).store.clear_history(userId, domain, category)
    logger.info(f"Cleared {removed} session(s) for {userId}")
    return ClearHistoryResponse(removed=removed)


router.include_router(protected)
