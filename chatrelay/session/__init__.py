"""
会话存储模块 - 基于 Redis 的按作用域会话历史。

每个会话由 (userId, domain, category) 三元组唯一标识，
存储为一个有长度上限、24 小时滚动过期的 Redis 列表。

【架构定位】
会话存储位于轮次编排器（agent.turn）之下：
- 编排器在生成前读取历史构建模型输入
- 用户消息与生成并发写入，助手回复在后台写入

【Java 开发者类比】
- StoreHandle 类似于 Spring 管理的 RedisConnectionFactory
- SessionStore 类似于 Spring Session 的 SessionRepository
"""

from chatrelay.session.keys import ScopeError, build_key, build_pattern
from chatrelay.session.store import (
    SESSION_TTL_SECONDS,
    Message,
    SessionStore,
    StoreError,
    StoreHandle,
)

__all__ = [
    "SESSION_TTL_SECONDS",
    "Message",
    "ScopeError",
    "SessionStore",
    "StoreError",
    "StoreHandle",
    "build_key",
    "build_pattern",
]
