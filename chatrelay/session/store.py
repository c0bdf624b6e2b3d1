"""
会话存储实现模块 - 基于 Redis 列表的对话历史存储。

本模块包含：
- Message：单条消息（role + content），追加后不可变
- StoreHandle：进程级共享的 Redis 连接句柄，显式获取、显式关闭
- SessionStore：会话历史的追加、读取和按作用域清理

【存储格式】
每个会话对应一个 Redis 列表，键由 keys.build_key() 生成：
    chat:<userId>::<domain>:<category>
列表中每个元素是一条 JSON 编码的消息 {"role": ..., "content": ...}，
从左到右按时间先后排列（最旧在前）。

【原子性】
追加消息时，RPUSH + LTRIM + EXPIRE 三条命令放在同一个 MULTI/EXEC 事务里，
要么全部生效，要么全部不生效。只执行了 RPUSH 而没有裁剪/续期会让历史无限增长，
或让会话永远不过期。

【Java 开发者类比】
- StoreHandle 类似于一个懒加载的单例连接池（但生命周期由调用方显式管理）
- SessionStore 类似于 Spring Data Redis 的 ListOperations 封装
- MULTI/EXEC 类似于 JDBC 的事务（commit 时一次性提交）
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import RedisError

from chatrelay.session.keys import build_key, build_pattern, is_full_scope

# 会话过期时间：最后一次追加后 24 小时
SESSION_TTL_SECONDS = 60 * 60 * 24

# 允许写入的消息角色
ROLES = ("user", "assistant")


class StoreError(Exception):
    """会话存储失败（连接失败、命令执行失败等）。"""


@dataclass(frozen=True)
class Message:
    """
    单条对话消息。

    属性:
        role: 消息角色（'user' 或 'assistant'）
        content: 消息文本内容
    """

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        """转换为 LLM 标准格式 {"role": ..., "content": ...}。"""
        return {"role": self.role, "content": self.content}

    def to_json(self) -> str:
        """序列化为存储在 Redis 列表中的 JSON 字符串。"""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Message":
        """
        从 Redis 列表元素反序列化消息。

        异常:
            ValueError: 元素不是合法 JSON、结构不对或角色未知
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        role, content = data.get("role"), data.get("content")
        if role not in ROLES or not isinstance(content, str):
            raise ValueError(f"invalid message record: {data!r}")
        return cls(role=role, content=content)


class StoreHandle:
    """
    Redis 连接句柄 - 整个进程共享一个客户端。

    - acquire()：获取客户端；首次调用时建立连接（PING 验证）。
      多个并发请求同时首次调用时，共享同一个进行中的连接任务，只会打开一个连接。
      连接失败不会被缓存，下一次 acquire() 会重新尝试。
    - close()：进程退出时显式关闭连接；之后再 acquire() 会重新连接。
      关闭时仍在连接中的 acquire() 调用会收到 StoreError。

    属性:
        url: Redis 连接地址
        _factory: 客户端工厂（测试时可注入 fakeredis）
        _client: 已建立的客户端
        _connecting: 进行中的连接任务
    """

    def __init__(self, url: str, factory: Callable[[], Any] | None = None):
        self.url = url
        self._factory = factory or (lambda: aioredis.from_url(url, decode_responses=True))
        self._client: Any = None
        self._connecting: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        """是否已建立连接。"""
        return self._client is not None

    async def acquire(self) -> Any:
        """
        获取共享客户端，必要时建立连接。

        连接失败，或连接过程中句柄被 close()，都抛出 StoreError。
        """
        if self._client is not None:
            return self._client

        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect())
        task = self._connecting

        try:
            # shield：某个等待者被取消时，不影响其他等待者共享的连接任务
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # 连接任务被 close() 取消，而不是等待者自己被取消
            if task.cancelled():
                raise StoreError(f"Connection to Redis at {self.url} was closed while connecting") from None
            raise
        finally:
            if task.done() and self._connecting is task:
                self._connecting = None

    async def _connect(self) -> Any:
        client = self._factory()
        try:
            await client.ping()
        except asyncio.CancelledError:
            await _close_quietly(client)
            raise
        except (RedisError, OSError) as e:
            await _close_quietly(client)
            raise StoreError(f"Failed to connect to Redis at {self.url}: {e}") from e
        self._client = client
        logger.info(f"Connected to Redis at {self.url}")
        return client

    async def close(self) -> None:
        """关闭连接（进程退出时调用）。"""
        task, self._connecting = self._connecting, None
        if task is not None and not task.done():
            task.cancel()
        client, self._client = self._client, None
        if client is not None:
            await _close_quietly(client)
            logger.info("Redis connection closed")


async def _close_quietly(client: Any) -> None:
    try:
        await client.aclose()
    except (RedisError, OSError) as e:
        logger.warning(f"Error while closing Redis client: {e}")


class SessionStore:
    """
    会话存储 - 对话历史的追加、读取和清理。

    会话不需要显式创建：第一次 append_message 时隐式创建，
    24 小时无追加后由 Redis 自动过期删除。

    属性:
        handle: 共享的 Redis 连接句柄
        max_messages: 每个会话保留的最大消息条数（<= 0 表示不裁剪）
        scan_count: 通配清理时每批扫描/删除的键数量
    """

    def __init__(self, handle: StoreHandle, max_messages: int = 20, scan_count: int = 100):
        self.handle = handle
        self.max_messages = max_messages
        self.scan_count = scan_count
        if max_messages <= 0:
            logger.warning(
                f"max_messages={max_messages}: history trimming is disabled, "
                "sessions will grow without bound"
            )

    async def append_message(
        self,
        user_id: str,
        role: str,
        content: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> None:
        """
        向会话末尾追加一条消息（原子操作：写入 + 裁剪 + 续期）。

        参数:
            user_id: 用户标识
            role: 'user' 或 'assistant'
            content: 消息文本
            domain: 领域（可选，缺省 "universal"）
            category: 分类（可选，缺省 "general"）

        异常:
            ValueError: 角色不合法
            ScopeError: 任一字段包含 ":"
            StoreError: Redis 操作失败
        """
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role!r}")

        key = build_key(user_id, domain, category)
        entry = Message(role=role, content=content).to_json()

        try:
            client = await self.handle.acquire()
            async with client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, entry)
                if self.max_messages > 0:
                    pipe.ltrim(key, -self.max_messages, -1)
                pipe.expire(key, SESSION_TTL_SECONDS)
                await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreError(f"Failed to append message to {key}: {e}") from e

    async def get_history(
        self,
        user_id: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> list[Message]:
        """
        读取会话的完整历史（最旧在前）。

        不存在或已过期的会话返回空列表。
        无法反序列化的元素视为数据损坏：记录警告并跳过，不影响其余消息。

        异常:
            StoreError: Redis 操作失败
        """
        key = build_key(user_id, domain, category)
        try:
            client = await self.handle.acquire()
            entries = await client.lrange(key, 0, -1)
        except (RedisError, OSError) as e:
            raise StoreError(f"Failed to read history from {key}: {e}") from e

        messages = []
        for index, raw in enumerate(entries):
            try:
                messages.append(Message.from_json(raw))
            except ValueError as e:
                logger.warning(f"Skipping corrupted entry #{index} in {key}: {e}")
        return messages

    async def clear_history(
        self,
        user_id: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> int:
        """
        按作用域清理历史。

        - domain 和 category 都给出：直接删除一个键（不扫描）
        - 缺少任一字段：用 SCAN 游标分批枚举匹配的键，逐批删除

        返回:
            实际删除的键数量（没有匹配时为 0）

        异常:
            ScopeError: 任一字段包含 ":"
            StoreError: Redis 操作失败
        """
        pattern = build_pattern(user_id, domain, category)
        try:
            client = await self.handle.acquire()

            if is_full_scope(domain, category):
                return await client.delete(pattern)

            removed = 0
            batch: list[str] = []
            async for key in client.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    removed += await client.delete(*batch)
                    batch = []
            if batch:
                removed += await client.delete(*batch)
        except (RedisError, OSError) as e:
            raise StoreError(f"Failed to clear history for {user_id}: {e}") from e

        logger.debug(f"Cleared {removed} session(s) matching {pattern}")
        return removed

    async def ttl(
        self,
        user_id: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> int | None:
        """会话剩余存活秒数；会话不存在或没有过期时间时返回 None。"""
        key = build_key(user_id, domain, category)
        try:
            client = await self.handle.acquire()
            remaining = await client.ttl(key)
        except (RedisError, OSError) as e:
            raise StoreError(f"Failed to read TTL of {key}: {e}") from e
        return remaining if remaining >= 0 else None
