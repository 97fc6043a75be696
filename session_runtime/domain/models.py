"""流式文本生成的统一数据模型。

本模块定义了 Provider 与 StreamingExecutor 之间共享的标准结构：

- StreamDelta / StreamDone / StreamAborted / StreamError: 流式文本源产出的
  封闭条目集合（StreamItem），执行器按类型分派到对应回调。
- CancellationToken: 显式传递给文本源的协作式取消信号。

所有 Provider 适配器都必须只产出这些条目，并负责在各自的 API 协议
（如 OpenAI SSE）与这些模型之间做转换。
"""

import asyncio
from dataclasses import dataclass
from typing import Literal, Optional, Union


@dataclass(frozen=True)
class StreamDelta:
    """一段增量文本。"""

    text: str
    kind: Literal["delta"] = "delta"


@dataclass(frozen=True)
class StreamDone:
    """生成正常结束。"""

    kind: Literal["done"] = "done"


@dataclass(frozen=True)
class StreamAborted:
    """生成被取消（通常是用户点击停止）。"""

    reason: Optional[str] = None
    kind: Literal["aborted"] = "aborted"


@dataclass(frozen=True)
class StreamError:
    """生成失败。

    - message: 用户可读的错误信息，会原样写入 AssistantMessageFailed。
    - retryable: Provider 判断是否值得重发（如 429 限流）。
    """

    message: str
    retryable: bool = False
    kind: Literal["error"] = "error"


StreamItem = Union[StreamDelta, StreamDone, StreamAborted, StreamError]


class CancellationToken:
    """协作式取消令牌。

    只负责“发信号”：cancel() 之后 cancelled 变为 True，wait() 返回。
    是否及时停止由持有者（文本源或执行器）自行检查。
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = "user") -> None:
        # 只记录第一次取消的原因
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> Optional[str]:
        await self._event.wait()
        return self._reason
