"""助手流式执行器。

一次 start() 对应一次可取消的流式生成：

1. 创建新的 CancellationToken，调度一个 asyncio 任务，同步返回 RunHandle；
2. 任务先 await on_start，再迭代文本源产出的 StreamItem，按类型分派到
   on_delta / on_done / on_abort / on_error；
3. 每一步都让“下一个条目”和取消信号赛跑，文本源卡住时 abort() 也能及时生效。

保证：每次运行恰好触发一次终止回调（done / abort / error 之一）；
文本源或回调抛出的异常都会转成 on_error，不会遗留未处理的任务异常。
取消被观察到之后，尚未交付的条目直接丢弃，已交付的增量保留。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from session_runtime.config.settings import settings
from session_runtime.domain.models import (
    CancellationToken,
    StreamAborted,
    StreamDelta,
    StreamDone,
    StreamError,
    StreamItem,
)
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.providers.base import StreamingTextSource
from session_runtime.providers.registry import resolve_model_for_purpose


@dataclass
class RunCallbacks:
    on_start: Callable[[], Awaitable[None]]
    on_delta: Callable[[str], Awaitable[None]]
    on_done: Callable[[], Awaitable[None]]
    on_abort: Callable[[Optional[str]], Awaitable[None]]
    on_error: Callable[[str], Awaitable[None]]


class RunHandle:
    """一次运行的句柄：abort() 只发取消信号，join() 等待运行结束。"""

    def __init__(self, run_id: str, token: CancellationToken):
        self.run_id = run_id
        self._token = token
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def aborted(self) -> bool:
        return self._token.cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def abort(self, reason: Optional[str] = "user") -> None:
        self._token.cancel(reason)

    async def join(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    def _attach(self, task: "asyncio.Task[None]") -> None:
        self._task = task


class _Cancelled(Exception):
    """执行器内部信号：取消已被观察到。"""


class StreamingExecutor:
    def __init__(self, text_source: StreamingTextSource, cfg=settings):
        self._source = text_source
        self._settings = cfg

    def start(
        self,
        messages: List[str],
        callbacks: RunCallbacks,
        *,
        run_id: str = "",
        model_override: Optional[str] = None,
        temperature: Optional[float] = None,
        batching_interval_ms: Optional[int] = None,
    ) -> RunHandle:
        token = CancellationToken()
        handle = RunHandle(run_id, token)
        options = {
            "model_override": model_override or resolve_model_for_purpose("thinking", self._settings),
            "temperature": self._settings.assistant_temperature if temperature is None else temperature,
            "batching_interval_ms": (
                self._settings.stream_batching_interval_ms if batching_interval_ms is None else batching_interval_ms
            ),
        }
        task = asyncio.get_running_loop().create_task(self._run(messages, callbacks, token, options, run_id))
        handle._attach(task)
        return handle

    async def _run(
        self,
        messages: List[str],
        callbacks: RunCallbacks,
        token: CancellationToken,
        options: Dict[str, Any],
        run_id: str,
    ) -> None:
        log_ctx = {"run_id": run_id, "provider": getattr(self._source, "name", "unknown")}
        finished = False

        async def terminal(kind: str, callback: Callable[..., Awaitable[None]], *args: Any) -> None:
            nonlocal finished
            if finished:
                return
            finished = True
            _log(logging.INFO, "Run finished", log_ctx, outcome=kind)
            try:
                await callback(*args)
            except Exception as exc:  # noqa: BLE001 - 终止回调只触发一次，失败只记录
                _log(logging.ERROR, "Terminal callback failed", log_ctx, outcome=kind, error=str(exc))

        stream: Optional[AsyncIterator[StreamItem]] = None
        try:
            await callbacks.on_start()
            stream = self._source.start_text_stream(messages, signal=token, **options)
            while not finished:
                try:
                    item = await _next_or_cancel(stream, token)
                except StopAsyncIteration:
                    # 文本源没有给出终止条目就结束了，按正常完成处理
                    await terminal("done", callbacks.on_done)
                    break
                if isinstance(item, StreamDelta):
                    await callbacks.on_delta(item.text)
                elif isinstance(item, StreamDone):
                    await terminal("done", callbacks.on_done)
                elif isinstance(item, StreamAborted):
                    await terminal("aborted", callbacks.on_abort, item.reason)
                elif isinstance(item, StreamError):
                    _log(logging.WARNING, "Stream reported error", log_ctx, error=item.message, retryable=item.retryable)
                    await terminal("error", callbacks.on_error, item.message)
                else:
                    _log(logging.WARNING, "Unknown stream item ignored", log_ctx, item=repr(item))
        except _Cancelled:
            await terminal("aborted", callbacks.on_abort, token.reason)
        except asyncio.CancelledError:
            await terminal("aborted", callbacks.on_abort, "cancelled")
            raise
        except Exception as exc:  # noqa: BLE001 - 所有异常都要汇入 on_error
            _log(logging.ERROR, "Run failed", log_ctx, error=str(exc), error_type=type(exc).__name__)
            await terminal("error", callbacks.on_error, str(exc) or type(exc).__name__)
        finally:
            await _close(stream)


async def _next_or_cancel(stream: AsyncIterator[StreamItem], token: CancellationToken) -> StreamItem:
    """取下一个条目；取消信号先到（或同时到）时抛 _Cancelled。"""

    if token.cancelled:
        raise _Cancelled()
    next_item = asyncio.ensure_future(_anext(stream))
    cancelled = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({next_item, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        next_item.cancel()
        raise
    finally:
        cancelled.cancel()
    if token.cancelled:
        next_item.cancel()
        await asyncio.gather(next_item, return_exceptions=True)
        raise _Cancelled()
    return next_item.result()


async def _anext(stream: AsyncIterator[StreamItem]) -> StreamItem:
    return await stream.__anext__()


async def _close(stream: Optional[AsyncIterator[StreamItem]]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:  # noqa: BLE001 - 关闭失败不影响已交付的终止回调
        logger.warning("Closing text stream failed", extra={"extra": {"error": str(exc)}})


def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
