"""
流式中继模块 —— 逐块转发模型输出，同时累积完整文本。

工作方式（单协程协作式消费）：
  读取一个块 → 交给下游（响应流）→ 记入缓冲 → 重复，直到上游结束或出错。
  块的顺序与模型产出顺序严格一致，不跳过、不重排。

出错处理：
  响应头在开始流式输出后就已经提交，无法再改状态码，
  所以上游中途失败时，中继向下游追加一个可见的错误标记
  "\\n[error] <原因>" 然后结束，不重试。错误标记不计入 text。

下游中断（客户端断开 / sink 写入失败）：
  停止转发并关闭上游；aborted 置为 True，completed 保持 False。
  直接迭代时，块一交出就计入 text；pipe() 中 sink 写失败的块不计入。

成功结束时保证：text == "".join(已转发的所有块)，
这正是随后交给后台持久化的助手回复。
"""

from typing import AsyncIterator, Awaitable, Callable

from loguru import logger

ERROR_MARKER_PREFIX = "\n[error] "
DEFAULT_ERROR_REASON = "Internal server error"


def error_marker(error: BaseException) -> str:
    """生成写入响应流末尾的错误标记。"""
    return f"{ERROR_MARKER_PREFIX}{str(error) or DEFAULT_ERROR_REASON}"


class StreamRelay:
    """
    流式中继 —— 包装一个文本块异步迭代器。

    只能被消费一次：直接 `async for chunk in relay`，或用 pipe(sink) 推送到下游。

    属性：
        source: 上游文本块迭代器（通常是 GenerationClient.stream() 的结果）
        chunks: 已转发给下游的块
        error: 上游抛出的异常（没有则为 None）
        completed: 上游正常耗尽且下游未中断
        aborted: 下游提前停止消费
    """

    def __init__(self, source: AsyncIterator[str]):
        self.source = source
        self.chunks: list[str] = []
        self.error: BaseException | None = None
        self.completed = False
        self.aborted = False
        self._consumed = False

    @property
    def text(self) -> str:
        """已转发块拼接而成的完整文本。"""
        return "".join(self.chunks)

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("StreamRelay can only be consumed once")
        self._consumed = True
        return self._relay()

    async def _relay(self) -> AsyncIterator[str]:
        try:
            async for chunk in self.source:
                # 交给下游即记账；pipe() 会撤回 sink 没写出去的那一块
                self.chunks.append(chunk)
                yield chunk
        except GeneratorExit:
            self.aborted = True
            logger.debug(f"Stream consumer went away after {len(self.chunks)} chunk(s)")
            raise
        except Exception as e:
            self.error = e
            logger.error(f"Stream failed after {len(self.chunks)} chunk(s): {e}")
            yield error_marker(e)
            return
        finally:
            aclose = getattr(self.source, "aclose", None)
            if aclose is not None:
                await aclose()
        self.completed = True

    async def pipe(self, sink: Callable[[str], Awaitable[None]]) -> str:
        """
        把全部输出（包括可能的错误标记）依次写入 sink。

        sink 抛出的异常会在关闭上游后继续向上抛出。

        返回：
            已转发的完整文本（不含错误标记）
        """
        stream = self.__aiter__()
        try:
            async for chunk in stream:
                try:
                    await sink(chunk)
                except BaseException:
                    # 错误标记不在 chunks 里，不用撤回
                    if self.error is None:
                        self.chunks.pop()
                    raise
        finally:
            await stream.aclose()
        return self.text
