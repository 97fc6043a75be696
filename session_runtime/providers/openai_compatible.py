"""OpenAI 兼容接口的流式文本源。

本模块负责：

1. 接收提示词列表（每条作为一个 user 消息）。
2. 将其转换为 /chat/completions 的 stream=true 请求。
3. 逐行解析 SSE 响应（data: {...} / data: [DONE]），按时间窗口合并增量。
4. 把网络/API 异常和取消信号转换为 StreamError / StreamAborted 条目，
   而不是把异常抛给执行器。
"""

import json
import re
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from session_runtime.config.settings import settings
from session_runtime.domain.exceptions import ApiError, BusinessError, NetworkError, RateLimitError
from session_runtime.domain.models import (
    CancellationToken,
    StreamAborted,
    StreamDelta,
    StreamDone,
    StreamError,
    StreamItem,
)
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.providers.registry import (
    OPENAI_COMPATIBLE_CONFIG,
    find_model_config,
    resolve_model_for_purpose,
)


def build_endpoint_url(base_url: Optional[str]) -> str:
    """规范化 base_url：已是端点则保留，/vN 结尾追加 chat/completions，否则追加 /v1/chat/completions。"""

    base = (base_url or "").rstrip("/")
    if not base:
        return f"{OPENAI_COMPATIBLE_CONFIG.base_url}/chat/completions"
    if re.search(r"/(chat/completions|responses)$", base, re.IGNORECASE):
        return base
    if re.search(r"/v\d+$", base, re.IGNORECASE):
        return f"{base}/chat/completions"
    return f"{base}/v1/chat/completions"


class _DeltaBatcher:
    """按时间窗口合并 token；interval 为 0/None 时逐个发送。"""

    def __init__(self, interval_ms: Optional[int]):
        self._interval = (interval_ms or 0) / 1000.0
        self._pending = ""
        self._last_emit = time.monotonic()

    def push(self, token: str) -> Optional[str]:
        if self._interval <= 0:
            return token
        self._pending += token
        now = time.monotonic()
        if now - self._last_emit >= self._interval:
            self._last_emit = now
            return self.flush()
        return None

    def flush(self) -> Optional[str]:
        chunk, self._pending = self._pending, ""
        return chunk or None


class OpenAICompatibleSource:
    """OpenAI 兼容 Provider 的 StreamingTextSource 实现。"""

    name = "openai-compatible"

    def __init__(self, cfg=settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg

    async def start_text_stream(
        self,
        messages: List[str],
        *,
        signal: CancellationToken,
        model_override: Optional[str] = None,
        temperature: Optional[float] = None,
        batching_interval_ms: Optional[int] = None,
    ) -> AsyncIterator[StreamItem]:
        api_key = getattr(self._settings, "llm_api_key", None)
        if not api_key:
            yield StreamError(message="MISSING_API_KEY: LLM_API_KEY not set")
            return
        model = model_override or resolve_model_for_purpose("thinking", self._settings)
        payload = self._build_payload(messages, model, temperature)
        url = build_endpoint_url(getattr(self._settings, "llm_base_url", None))
        batcher = _DeltaBatcher(batching_interval_ms)
        logger.info(
            "Opening text stream",
            extra={"extra": {"provider": self.name, "url": url, "model": model, "message_count": len(messages)}},
        )
        try:
            async with aclosing(self._iter_lines(url, payload, api_key)) as lines:
                async for line in lines:
                    if signal.cancelled:
                        yield StreamAborted(reason=signal.reason or "aborted")
                        return
                    data_str = _sse_data(line)
                    if data_str is None:
                        continue
                    if data_str == "[DONE]":
                        rest = batcher.flush()
                        if rest:
                            yield StreamDelta(text=rest)
                        yield StreamDone()
                        return
                    token = _extract_token(data_str)
                    if token:
                        chunk = batcher.push(token)
                        if chunk:
                            yield StreamDelta(text=chunk)
        except NetworkError as e:
            if signal.cancelled:
                yield StreamAborted(reason=signal.reason or "aborted")
            else:
                # 连接失败、超时等可以直接重发
                yield StreamError(message=e.message, retryable=True)
            return
        except RateLimitError as e:
            yield StreamError(message=e.message, retryable=True)
            return
        except BusinessError as e:
            yield StreamError(message=e.message)
            return
        # 服务端直接关闭连接：把剩余内容发完再结束
        rest = batcher.flush()
        if rest:
            yield StreamDelta(text=rest)
        yield StreamDone()

    async def _iter_lines(self, url: str, payload: Dict[str, Any], api_key: str) -> AsyncIterator[str]:
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    url,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                        "Accept": "text/event-stream",
                    },
                ) as resp:
                    await self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        yield line
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or "request failed")

    def _build_payload(self, messages: List[str], model: str, temperature: Optional[float]) -> Dict[str, Any]:
        model_cfg = find_model_config(model)
        default_temperature = model_cfg.default_temperature if model_cfg else 0.6
        payload: Dict[str, Any] = {
            "model": model,
            "stream": True,
            "temperature": default_temperature if temperature is None else temperature,
            "messages": [{"role": "user", "content": m} for m in messages],
        }
        if model_cfg:
            payload["max_tokens"] = model_cfg.max_tokens
        return payload

    @staticmethod
    async def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429:
            # 限流交给用户手动重发
            raise RateLimitError(code="RATE_LIMIT", message="LLM rate limit", http_status=429)
        if resp.status_code >= 400:
            body = (await resp.aread()).decode("utf-8", errors="replace")
            raise ApiError(code="API_ERROR", message=body or f"HTTP {resp.status_code}", http_status=resp.status_code)


def _sse_data(line: str) -> Optional[str]:
    if not line or not line.startswith("data:"):
        return None
    data = line[5:].strip()
    return data or None


def _extract_token(data_str: str) -> str:
    """取 choices[0].delta.content 或 choices[0].text；坏行返回空串。"""

    try:
        chunk = json.loads(data_str)
    except json.JSONDecodeError:
        return ""
    choices = chunk.get("choices") if isinstance(chunk, dict) else None
    if not choices:
        return ""
    first = choices[0] or {}
    token = (first.get("delta") or {}).get("content")
    if token is None:
        token = first.get("text")
    return token if isinstance(token, str) else ""
