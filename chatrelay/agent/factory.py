"""
组件装配模块 —— 根据配置创建存储句柄、生成客户端和轮次编排器。

HTTP 服务和 CLI 共用这里的装配逻辑，保证两边的行为一致。
"""

from chatrelay.agent.context import ContextBuilder
from chatrelay.agent.turn import TurnOrchestrator
from chatrelay.config.schema import Config
from chatrelay.providers.base import GenerationClient
from chatrelay.providers.litellm_provider import LiteLLMClient
from chatrelay.session.store import SessionStore, StoreHandle


def make_generator(config: Config) -> LiteLLMClient:
    """根据 model 配置创建 LiteLLM 生成客户端。"""
    m = config.model
    return LiteLLMClient(
        model=m.model,
        api_key=m.api_key or None,
        api_base=m.api_base,
        max_tokens=m.max_tokens,
        temperature=m.temperature,
    )


def build_orchestrator(
    config: Config,
    handle: StoreHandle | None = None,
    generator: GenerationClient | None = None,
) -> tuple[StoreHandle, TurnOrchestrator]:
    """
    创建轮次编排器及其依赖。

    参数:
        config: 全局配置
        handle: 已有的存储句柄（为 None 时按 store.redis_url 创建）
        generator: 已有的生成客户端（为 None 时按 model 配置创建）

    返回:
        (存储句柄, 轮次编排器)；句柄需要由调用方在退出时 close()
    """
    handle = handle or StoreHandle(config.store.redis_url)
    store = SessionStore(
        handle,
        max_messages=config.store.max_messages,
        scan_count=config.store.scan_count,
    )
    orchestrator = TurnOrchestrator(
        store=store,
        generator=generator or make_generator(config),
        context=ContextBuilder(config.model.system_instruction),
    )
    return handle, orchestrator
