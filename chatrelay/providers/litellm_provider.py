"""
LiteLLM 生成客户端实现模块。

本模块是 GenerationClient 抽象基类的唯一实现，通过 LiteLLM 开源库对接
任何 OpenAI 兼容的推理服务（Docker Model Runner、vLLM、OpenAI、OpenRouter 等）。

LiteLLM 是什么？
  LiteLLM 是一个 Python 库，它将 100+ 家 LLM 服务商的 API 统一为 OpenAI 兼容格式。
  类比 Java 世界：LiteLLM 类似于 JDBC —— 一套接口，多种数据库驱动。

数据流：
  TurnOrchestrator → LiteLLMClient.generate() → litellm.acompletion() → LLM API
  TurnOrchestrator → LiteLLMClient.stream()   → litellm.acompletion(stream=True) → 增量块
"""

from typing import Any, AsyncIterator

import litellm
from litellm import acompletion
from loguru import logger

from chatrelay.providers.base import GenerationClient, GenerationError


class LiteLLMClient(GenerationClient):
    """
    基于 LiteLLM 的生成客户端。

    构造参数：
        model: LiteLLM 模型标识（如 "openai/ai/qwen3:4B-UD-Q4_K_XL"）
        api_key: API 密钥（本地推理服务可为空）
        api_base: 自定义 API 基础 URL（OpenAI 兼容端点）
        max_tokens: 单次生成的最大 token 数
        temperature: 采样温度
        extra_headers: 额外的 HTTP 请求头
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        extra_headers: dict[str, str] | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.extra_headers = extra_headers or {}

        # 禁用 LiteLLM 的调试日志输出（默认很啰嗦）
        litellm.suppress_debug_info = True
        # 自动丢弃服务商不支持的参数（避免因多余参数导致请求失败）
        litellm.drop_params = True

    def _build_kwargs(self, messages: list[dict[str, Any]], stream: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if stream:
            kwargs["stream"] = True
        # 直接传 api_key 比仅依赖环境变量更可靠
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        return kwargs

    async def generate(self, messages: list[dict[str, Any]]) -> str:
        """
        一次性生成完整回复。

        参数：
            messages: 有序消息列表（系统提示词 + 历史 + 本轮用户消息）

        返回：
            回复文本（模型返回 None 时为空字符串）
        """
        try:
            response = await acompletion(**self._build_kwargs(messages, stream=False))
        except Exception as e:
            raise GenerationError(f"Error calling LLM: {e}") from e

        if not response.choices:
            raise GenerationError("LLM returned no choices")
        return response.choices[0].message.content or ""

    async def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[str]:
        """
        流式生成回复，按模型产出顺序逐块 yield 非空文本增量。

        中途出错时抛出 GenerationError（由 StreamRelay 负责写出错误标记）。
        """
        try:
            response = await acompletion(**self._build_kwargs(messages, stream=True))
        except Exception as e:
            raise GenerationError(f"Error calling LLM: {e}") from e

        try:
            async for part in response:
                if not part.choices:
                    continue
                delta = part.choices[0].delta
                content = getattr(delta, "content", None)
                if content:
                    yield content
        except Exception as e:
            logger.error(f"LLM stream interrupted: {e}")
            raise GenerationError(f"LLM stream interrupted: {e}") from e

    def get_default_model(self) -> str:
        """获取模型名称。"""
        return self.model
