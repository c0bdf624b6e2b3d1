"""
生成客户端基类定义模块。

本模块定义了与大语言模型交互的抽象接口：
- GenerationClient : 抽象基类，所有模型客户端必须实现 generate() 和 stream()
- GenerationError  : 生成失败时抛出的异常

架构角色：
  轮次编排器 → GenerationClient.generate()/stream() → LLM API → 文本 / 文本块序列

契约：
  - 输入是有序消息列表 [{"role": ..., "content": ...}, ...]，最旧在前，
    第一条为系统提示词，最后一条为本轮用户消息
  - stream() 产出的所有文本块拼接起来，必须等于同一请求 generate() 的完整文本
  - 失败时抛出 GenerationError，而不是把错误信息当作回复返回
    （回复会被持久化到会话历史，错误文本不能混进去）

类比 Java：
  - GenerationClient 相当于一个 interface
  - stream() 返回的 AsyncIterator 相当于 Reactor 的 Flux<String>
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator


class GenerationError(Exception):
    """模型调用失败（网络错误、API 错误、响应格式异常等）。"""


class GenerationClient(ABC):
    """
    生成客户端抽象基类（类似 Java 的 interface）。

    当前项目中唯一的实现类是 LiteLLMClient（在 litellm_provider.py 中）。
    测试中可以用一个按脚本返回文本块的桩实现替代。
    """

    @abstractmethod
    async def generate(self, messages: list[dict[str, Any]]) -> str:
        """
        一次性生成完整回复。

        参数：
            messages: 有序消息列表

        返回：
            完整回复文本

        异常：
            GenerationError: 调用失败
        """
        pass

    @abstractmethod
    def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[str]:
        """
        流式生成回复，逐块产出文本。

        实现通常是一个 async generator；中途失败时在迭代过程中抛出 GenerationError。
        """
        pass

    @abstractmethod
    def get_default_model(self) -> str:
        """获取该客户端使用的模型名称。"""
        pass
