"""
轮次编排模块 —— 一次对话轮次的核心处理流程。

一次轮次（Turn）= 用户的一句话 + 模型的一段回复。状态流转：

    FETCHING → GENERATING → PERSISTING_ASSISTANT → DONE

各步骤的并发安排（延迟隐藏）：
1. FETCHING：读取会话历史并等待结果 —— 构建模型输入必须用到它
2. 读完历史后立即发起用户消息写入，但不等待；写入与生成并行进行
   （模型输入来自写入之前读到的历史，所以写入结果与本轮输入无关）
3. GENERATING：调用模型（阻塞或流式）
4. 生成结束后确认用户消息写入已落定（失败只记日志，不影响回复）
5. PERSISTING_ASSISTANT：把完整回复交给后台任务写入，响应不等待其结果

模型生成的耗时通常比存储往返高一到两个数量级，
把存储 I/O 与生成重叠、把助手消息写入推迟到响应之后，都是为了不增加用户可见的延迟。
后台写入依旧必须发生，失败时通过日志和 stats 计数暴露出来。

错误处理：
- 历史读取失败：StoreError 直接抛给调用方，本轮中止（不能假装是一个新会话）
- 生成失败：GenerationError 直接抛给调用方，不写入任何助手消息
- 后台写入失败：只记录日志并计数，永远不会抛给调用方

【Java 开发者类比】
- TurnOrchestrator 类似于一个 Spring Service，协调 Repository 和外部客户端
- 后台写入类似于 @Async 方法 + 异常处理器（AsyncUncaughtExceptionHandler）
"""

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine

from loguru import logger

from chatrelay.agent.context import ContextBuilder
from chatrelay.agent.relay import StreamRelay
from chatrelay.providers.base import GenerationClient
from chatrelay.session.keys import build_key
from chatrelay.session.store import SessionStore


class TurnState(str, Enum):
    """单个轮次的处理阶段。"""

    FETCHING = "fetching"
    GENERATING = "generating"
    PERSISTING_ASSISTANT = "persisting_assistant"
    DONE = "done"


@dataclass(frozen=True)
class Scope:
    """会话作用域 (userId, domain, category)。"""

    user_id: str
    domain: str | None = None
    category: str | None = None

    @property
    def key(self) -> str:
        return build_key(self.user_id, self.domain, self.category)


@dataclass
class PreparedTurn:
    """
    准备好的轮次。

    属性：
        scope: 会话作用域
        messages: 模型输入（系统提示词 + 历史 + 本轮用户消息）
        pending_user_write: 进行中的用户消息写入任务
    """

    scope: Scope
    messages: list[dict[str, Any]]
    pending_user_write: asyncio.Task


class TurnOrchestrator:
    """
    轮次编排器 —— 按轮次协调 SessionStore 与 GenerationClient。

    同一会话的并发轮次不加锁：每次追加都是独立的原子操作（写入 + 裁剪 + 续期），
    并发时追加顺序不确定，但不会丢失更新。

    属性：
        store: 会话存储
        generator: 生成客户端
        context: 上下文构建器
        stats: 后台写入统计 {"background_writes": 成功数, "background_failures": 失败数}
    """

    def __init__(
        self,
        store: SessionStore,
        generator: GenerationClient,
        context: ContextBuilder | None = None,
    ):
        self.store = store
        self.generator = generator
        self.context = context or ContextBuilder()
        self.stats = {"background_writes": 0, "background_failures": 0}
        self._background: set[asyncio.Task] = set()

    # ---- 后台任务 ----

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
        """启动一个脱离调用方的后台任务，并登记失败回调。"""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(lambda t: self._on_background_done(t, label))
        return task

    def _on_background_done(self, task: asyncio.Task, label: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            self.stats["background_failures"] += 1
            logger.warning(f"Background {label} was cancelled")
            return
        error = task.exception()
        if error is not None:
            self.stats["background_failures"] += 1
            logger.error(f"Background {label} failed: {error}")
        else:
            self.stats["background_writes"] += 1

    @staticmethod
    async def settle(task: asyncio.Task) -> bool:
        """
        等待一个后台写入落定，但不抛出它的异常（失败已由回调记录）。

        返回：
            True 表示写入成功
        """
        await asyncio.wait([task])
        return not task.cancelled() and task.exception() is None

    @property
    def pending_background(self) -> int:
        """尚未完成的后台任务数量。"""
        return len(self._background)

    async def drain(self) -> None:
        """等待所有后台写入完成（进程退出或测试时使用）。"""
        while self._background:
            await asyncio.wait(list(self._background))

    # ---- 轮次流程 ----

    async def prepare_turn(
        self,
        user_id: str,
        user_message: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> PreparedTurn:
        """
        读取历史并构建模型输入，然后发起用户消息写入（不等待）。

        异常：
            StoreError: 历史读取失败，本轮中止
        """
        scope = Scope(user_id, domain, category)
        logger.debug(f"[{scope.key}] {TurnState.FETCHING.value}")

        history = await self.store.get_history(user_id, domain, category)
        messages = self.context.build_messages(history, user_message)

        pending = self._spawn(
            self.store.append_message(user_id, "user", user_message, domain, category),
            f"user message write to {scope.key}",
        )
        return PreparedTurn(scope=scope, messages=messages, pending_user_write=pending)

    def append_assistant_message_in_background(
        self,
        user_id: str,
        content: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> asyncio.Task | None:
        """
        在后台写入助手回复，调用方不等待结果。

        空回复不写入，返回 None。
        """
        key = build_key(user_id, domain, category)
        if not content:
            logger.debug(f"[{key}] empty reply, nothing to persist")
            return None
        logger.debug(f"[{key}] {TurnState.PERSISTING_ASSISTANT.value}")
        return self._spawn(
            self.store.append_message(user_id, "assistant", content, domain, category),
            f"assistant message write to {key}",
        )

    async def run_turn(
        self,
        user_id: str,
        user_message: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> str:
        """
        非流式轮次：生成完整回复后返回。

        异常：
            StoreError: 历史读取失败
            GenerationError: 生成失败（不会写入助手消息）
        """
        turn = await self.prepare_turn(user_id, user_message, domain, category)
        logger.debug(f"[{turn.scope.key}] {TurnState.GENERATING.value}")

        t0 = time.perf_counter()
        reply = await self.generator.generate(turn.messages)
        logger.debug(f"[{turn.scope.key}] generation took {(time.perf_counter() - t0) * 1000:.1f}ms")

        await self.settle(turn.pending_user_write)
        self.append_assistant_message_in_background(user_id, reply, domain, category)
        logger.debug(f"[{turn.scope.key}] {TurnState.DONE.value}")
        return reply

    async def open_stream(
        self,
        user_id: str,
        user_message: str,
        domain: str | None = None,
        category: str | None = None,
    ) -> "StreamingTurn":
        """
        流式轮次：先完成历史读取（失败时在任何输出之前抛出 StoreError），
        再返回一个可异步迭代的 StreamingTurn。
        """
        turn = await self.prepare_turn(user_id, user_message, domain, category)
        return StreamingTurn(self, turn)


class StreamingTurn:
    """
    一次流式轮次 —— 迭代它即得到要写给客户端的文本块。

    块一产生就交给下游，不等待用户消息写入；
    上游耗尽后再确认用户消息写入落定，成功结束时把完整文本交给后台持久化。
    """

    def __init__(self, orchestrator: TurnOrchestrator, turn: PreparedTurn):
        self.orchestrator = orchestrator
        self.turn = turn
        self.relay = StreamRelay(orchestrator.generator.stream(turn.messages))

    @property
    def text(self) -> str:
        return self.relay.text

    @property
    def completed(self) -> bool:
        return self.relay.completed

    @property
    def error(self) -> BaseException | None:
        return self.relay.error

    def __aiter__(self) -> AsyncIterator[str]:
        return self._run()

    async def _run(self) -> AsyncIterator[str]:
        scope = self.turn.scope
        logger.debug(f"[{scope.key}] {TurnState.GENERATING.value} (stream)")
        t0 = time.perf_counter()

        async with aclosing(self.relay.__aiter__()) as chunks:
            async for chunk in chunks:
                yield chunk

        await self.orchestrator.settle(self.turn.pending_user_write)
        if self.relay.completed:
            logger.debug(f"[{scope.key}] stream completed in {(time.perf_counter() - t0) * 1000:.1f}ms")
            self.orchestrator.append_assistant_message_in_background(
                scope.user_id, self.relay.text, scope.domain, scope.category
            )
        logger.debug(f"[{scope.key}] {TurnState.DONE.value}")

    async def pipe(self, sink: Callable[[str], Awaitable[None]]) -> str:
        """把全部输出依次写入 sink，返回已转发的完整文本。"""
        async with aclosing(self._run()) as chunks:
            async for chunk in chunks:
                await sink(chunk)
        return self.text
