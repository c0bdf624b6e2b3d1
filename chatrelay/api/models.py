"""HTTP 接口的 Pydantic 请求/响应模型。"""

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Requests ───────────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    user_id: str = Field(alias="userId", min_length=1)
    domain: str | None = None
    category: str | None = None

    @field_validator("message")
    @classmethod
    def _strip_message(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("message must not be blank")
        return value


# ── Responses ──────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    error: bool = True
    reason: str


class ChatReplyResponse(BaseModel):
    error: bool = False
    reply: str


class MessageItem(BaseModel):
    role: str
    content: str


class HistoryResponse(BaseModel):
    error: bool = False
    messages: list[MessageItem]
    ttl: int | None = None


class ClearHistoryResponse(BaseModel):
    error: bool = False
    removed: int
