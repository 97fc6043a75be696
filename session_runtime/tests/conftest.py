import asyncio

import pytest_asyncio

from session_runtime.domain.models import StreamDelta, StreamDone
from session_runtime.runtime.bootstrap import ensure_runtime, reset_runtime

SETTLE_TIMEOUT = 5

# 带 <direction> 标记的方向提案
PROPOSAL = [StreamDelta(text="<direction>\n"), StreamDelta(text="# RAG 医学问答评测"), StreamDone()]


class SettingsStub:
    default_provider = "openai-compatible"
    thinking_model = None
    task_model = None
    assistant_temperature = 0.6
    stream_batching_interval_ms = 0
    context_window_size = 6
    title_generation_enabled = False
    title_locale = "zh-CN"


class FakeSource:
    """测试用文本源。

    scripts 中每一项对应一次 start_text_stream 调用（用完后重复最后一项）；
    脚本里的 "gate" 会挂起直到 release() 被调用。
    调用在 start_text_stream 返回前登记，流在迭代前就被取消也算一次调用。
    """

    name = "fake"

    def __init__(self, *scripts):
        self.scripts = list(scripts) or [[StreamDelta(text="He"), StreamDelta(text="llo"), StreamDone()]]
        self.calls = []
        self.gate = asyncio.Event()

    def release(self):
        self.gate.set()

    def start_text_stream(self, messages, *, signal, model_override=None, temperature=None, batching_interval_ms=None):
        script = self.scripts[min(len(self.calls), len(self.scripts) - 1)]
        self.calls.append({"messages": list(messages), "model": model_override, "temperature": temperature})
        return self._stream(script)

    async def _stream(self, script):
        for item in script:
            if item == "gate":
                await self.gate.wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item


async def settle(rt, timeout=SETTLE_TIMEOUT):
    """等待运行时空闲；卡住时让测试失败而不是一直挂起。"""
    await asyncio.wait_for(rt.wait_idle(), timeout)


@pytest_asyncio.fixture
async def make_runtime():
    await asyncio.wait_for(reset_runtime(), SETTLE_TIMEOUT)

    def factory(source=None, cfg=None, **kwargs):
        return ensure_runtime(text_source=source or FakeSource(), cfg=cfg or SettingsStub(), **kwargs)

    yield factory
    await asyncio.wait_for(reset_runtime(), SETTLE_TIMEOUT)
