import asyncio

import pytest

from session_runtime.domain.models import StreamAborted, StreamDelta, StreamDone, StreamError
from session_runtime.runtime.executor import RunCallbacks, StreamingExecutor


class SettingsStub:
    default_provider = "openai-compatible"
    thinking_model = None
    assistant_temperature = 0.6
    stream_batching_interval_ms = 80


class ScriptedSource:
    """按脚本产出条目；遇到 "stall" 时一直挂起，直到被取消。"""

    name = "scripted"

    def __init__(self, script):
        self.script = script
        self.calls = []
        self.closed = False

    def start_text_stream(self, messages, *, signal, model_override=None, temperature=None, batching_interval_ms=None):
        # 调用即登记，即使流还没被迭代就被取消
        self.calls.append({
            "messages": messages,
            "model": model_override,
            "temperature": temperature,
            "batching_interval_ms": batching_interval_ms,
        })
        return self._stream()

    async def _stream(self):
        try:
            for item in self.script:
                if item == "stall":
                    await asyncio.Event().wait()
                elif isinstance(item, Exception):
                    raise item
                else:
                    yield item
        finally:
            self.closed = True


class Recorder:
    def __init__(self):
        self.log = []
        self.delta_seen = asyncio.Event()

    def callbacks(self):
        async def on_start():
            self.log.append(("start",))

        async def on_delta(text):
            self.log.append(("delta", text))
            self.delta_seen.set()

        async def on_done():
            self.log.append(("done",))

        async def on_abort(reason):
            self.log.append(("abort", reason))

        async def on_error(message):
            self.log.append(("error", message))

        return RunCallbacks(on_start=on_start, on_delta=on_delta, on_done=on_done, on_abort=on_abort, on_error=on_error)

    @property
    def terminals(self):
        return [entry for entry in self.log if entry[0] in ("done", "abort", "error")]


async def run(script, **kwargs):
    source = ScriptedSource(script)
    rec = Recorder()
    handle = StreamingExecutor(source, SettingsStub()).start(["prompt"], rec.callbacks(), run_id="R1", **kwargs)
    await handle.join()
    return source, rec, handle


@pytest.mark.asyncio
async def test_deltas_then_done():
    source, rec, handle = await run([StreamDelta(text="He"), StreamDelta(text="llo"), StreamDone()])
    assert rec.log == [("start",), ("delta", "He"), ("delta", "llo"), ("done",)]
    assert handle.done
    assert handle.run_id == "R1"


@pytest.mark.asyncio
async def test_defaults_from_settings():
    source, _, _ = await run([StreamDone()])
    assert source.calls == [{
        "messages": ["prompt"],
        "model": "gpt-4o",
        "temperature": 0.6,
        "batching_interval_ms": 80,
    }]


@pytest.mark.asyncio
async def test_explicit_options_override_settings():
    source, _, _ = await run([StreamDone()], model_override="m-x", temperature=0.1, batching_interval_ms=0)
    assert source.calls[0]["model"] == "m-x"
    assert source.calls[0]["temperature"] == 0.1
    assert source.calls[0]["batching_interval_ms"] == 0


@pytest.mark.asyncio
async def test_error_item_is_terminal():
    _, rec, _ = await run([StreamDelta(text="a"), StreamError(message="rate limited", retryable=True), StreamDone()])
    assert rec.log == [("start",), ("delta", "a"), ("error", "rate limited")]


@pytest.mark.asyncio
async def test_aborted_item_is_terminal():
    _, rec, _ = await run([StreamAborted(reason="server"), StreamDelta(text="x")])
    assert rec.log == [("start",), ("abort", "server")]


@pytest.mark.asyncio
async def test_source_exception_becomes_error():
    source, rec, _ = await run([StreamDelta(text="a"), RuntimeError("boom")])
    assert rec.log == [("start",), ("delta", "a"), ("error", "boom")]
    assert source.closed


@pytest.mark.asyncio
async def test_stream_without_terminal_counts_as_done():
    _, rec, _ = await run([StreamDelta(text="a")])
    assert rec.terminals == [("done",)]


@pytest.mark.asyncio
async def test_items_after_done_are_ignored():
    _, rec, _ = await run([StreamDone(), StreamDelta(text="late"), StreamDone()])
    assert rec.log == [("start",), ("done",)]


@pytest.mark.asyncio
async def test_abort_interrupts_stalled_source():
    source = ScriptedSource([StreamDelta(text="a"), "stall", StreamDelta(text="never")])
    rec = Recorder()
    handle = StreamingExecutor(source, SettingsStub()).start(["prompt"], rec.callbacks())
    await asyncio.wait_for(rec.delta_seen.wait(), timeout=1)
    handle.abort("user")
    await asyncio.wait_for(handle.join(), timeout=1)

    assert handle.aborted
    assert rec.log == [("start",), ("delta", "a"), ("abort", "user")]
    assert source.closed


@pytest.mark.asyncio
async def test_abort_before_first_item():
    rec = Recorder()
    source = ScriptedSource([StreamDelta(text="a"), StreamDone()])
    handle = StreamingExecutor(source, SettingsStub()).start(["prompt"], rec.callbacks())
    handle.abort("user")
    handle.abort("second")
    await asyncio.wait_for(handle.join(), timeout=1)
    assert rec.log == [("start",), ("abort", "user")]
    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_callback_exception_becomes_error():
    rec = Recorder()
    callbacks = rec.callbacks()

    async def bad_delta(text):
        raise ValueError("projection exploded")

    callbacks.on_delta = bad_delta
    handle = StreamingExecutor(ScriptedSource([StreamDelta(text="a"), StreamDone()]), SettingsStub()).start(
        ["prompt"], callbacks
    )
    await handle.join()
    assert rec.terminals == [("error", "projection exploded")]


@pytest.mark.asyncio
async def test_failing_terminal_callback_is_not_retried():
    calls = []
    rec = Recorder()
    callbacks = rec.callbacks()

    async def bad_done():
        calls.append("done")
        raise RuntimeError("done handler failed")

    callbacks.on_done = bad_done
    handle = StreamingExecutor(ScriptedSource([StreamDone()]), SettingsStub()).start(["prompt"], callbacks)
    await handle.join()
    assert calls == ["done"]
    assert rec.terminals == []
