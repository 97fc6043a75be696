"""Provider 抽象接口。

StreamingExecutor 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个 StreamingTextSource（如 OpenAICompatibleSource）。
- 负责：把提示词列表转成具体 API 请求，并把流式响应解析为 StreamItem。

这样可以在不改执行器代码的前提下接入更多厂商。
"""

from typing import AsyncIterator, List, Optional, Protocol

from session_runtime.domain.models import CancellationToken, StreamItem


class StreamingTextSource(Protocol):
    """流式文本源协议。

    实现者需要提供：
    - name: Provider 名称，用于日志。
    - start_text_stream: 返回惰性的、不可重启的异步条目序列，
      以 done / aborted / error 之一结束；signal 被取消后应尽快产出 aborted。
    """

    name: str

    def start_text_stream(
        self,
        messages: List[str],
        *,
        signal: CancellationToken,
        model_override: Optional[str] = None,
        temperature: Optional[float] = None,
        batching_interval_ms: Optional[int] = None,
    ) -> AsyncIterator[StreamItem]:
        ...
