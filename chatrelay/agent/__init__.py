"""
轮次编排模块（agent 包）。

- context.py : ContextBuilder，组装系统提示词 + 历史 + 本轮消息
- relay.py   : StreamRelay，逐块转发模型输出并累积完整文本
- turn.py    : TurnOrchestrator，协调历史读取、消息写入与模型调用
"""

from chatrelay.agent.context import ContextBuilder
from chatrelay.agent.relay import StreamRelay
from chatrelay.agent.turn import PreparedTurn, StreamingTurn, TurnOrchestrator, TurnState

__all__ = [
    "ContextBuilder",
    "PreparedTurn",
    "StreamRelay",
    "StreamingTurn",
    "TurnOrchestrator",
    "TurnState",
]
