"""
生成客户端模块（providers 包）。

本模块是 chatrelay 与大语言模型服务之间的桥梁层：
- base.py             : GenerationClient 抽象基类和 GenerationError
- litellm_provider.py : 基于 LiteLLM 的实现，对接任意 OpenAI 兼容端点

轮次编排器只依赖 GenerationClient 接口，
阻塞生成用 generate()，流式生成用 stream()。
"""

from chatrelay.providers.base import GenerationClient, GenerationError
from chatrelay.providers.litellm_provider import LiteLLMClient

__all__ = ["GenerationClient", "GenerationError", "LiteLLMClient"]
