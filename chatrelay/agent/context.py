"""
上下文构建器模块 —— 负责组装发给模型的消息列表。

消息列表的结构：
  1. [系统提示词]   — 固定的 system_instruction
  2. [历史消息...]  — 本轮写入之前读取到的会话历史（最旧在前）
  3. [当前用户消息] — 本轮用户输入

注意：本轮的用户消息与历史读取是分开的。用户消息的写入和生成并发进行，
模型输入只基于"写入之前"读到的历史，再在末尾拼上本轮消息，因此不会重复。
"""

from typing import Any

from chatrelay.config.schema import DEFAULT_SYSTEM_INSTRUCTION
from chatrelay.session.store import Message


class ContextBuilder:
    """
    上下文构建器 —— 将系统提示词、历史对话和当前消息组装成 LLM 消息格式。

    【Java 类比】类似于一个 PromptTemplateService。

    属性：
        system_instruction: 固定系统提示词
    """

    def __init__(self, system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION):
        self.system_instruction = system_instruction

    def build_messages(
        self,
        history: list[Message],
        current_message: str,
    ) -> list[dict[str, Any]]:
        """
        构建完整的 LLM 消息列表。

        参数：
            history: 会话历史（Message 列表，最旧在前）
            current_message: 当前用户消息文本

        返回：
            可直接传给 GenerationClient 的消息列表
        """
        messages: list[dict[str, Any]] = [{"role": "system", "content": self.system_instruction}]
        messages.extend(m.to_dict() for m in history)
        messages.append({"role": "user", "content": current_message})
        return messages
