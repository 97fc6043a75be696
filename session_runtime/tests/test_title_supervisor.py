import pytest

from conftest import SettingsStub, settle
from session_runtime.domain.commands import CreateSession, RenameSession, SendMessage, new_command
from session_runtime.domain.models import StreamDelta, StreamDone, StreamError
from session_runtime.domain.session import DEFAULT_SESSION_TITLE
from session_runtime.runtime.title_supervisor import sanitize_title


class TitleSettings(SettingsStub):
    title_generation_enabled = True


class TitleAwareSource:
    """task 模型返回标题，thinking 模型返回普通回复。"""

    name = "fake"

    def __init__(self, title_items):
        self.title_items = title_items
        self.models = []

    async def start_text_stream(self, messages, *, signal, model_override=None, temperature=None, batching_interval_ms=None):
        self.models.append(model_override)
        if model_override == "gpt-4o-mini":
            for item in self.title_items:
                yield item
            return
        yield StreamDelta(text="Hello")
        yield StreamDone()


def test_sanitize_strips_punctuation_and_extra_lines():
    assert sanitize_title("“大模型检索增强综述”。\n第二行", "x") == "大模型检索增强综述"


def test_sanitize_truncates_long_titles():
    assert sanitize_title("一二三四五六七八九十壹贰叁肆", "x") == "一二三四五六七八九十壹贰"


def test_sanitize_short_title_falls_back_to_user_text():
    assert sanitize_title("RAG", "检索增强生成在医学中的应用？") == "检索增强生成在医学中"
    assert sanitize_title("RAG", "？？") == "研究会话"


def test_sanitize_empty():
    assert sanitize_title("", "hello") == ""
    assert sanitize_title("  \n", "hello") == ""


@pytest.mark.asyncio
async def test_title_generated_for_default_title(make_runtime):
    source = TitleAwareSource([StreamDelta(text="医学"), StreamDelta(text="检索增强评测"), StreamDone()])
    rt = make_runtime(source, cfg=TitleSettings())
    await rt.command_bus.dispatch(new_command(CreateSession, "S1"))
    assert rt.projection.get_session("S1").title == DEFAULT_SESSION_TITLE

    await rt.command_bus.dispatch(new_command(SendMessage, "S1", text="RAG 在医学问答里怎么评测？"))
    await settle(rt)

    assert rt.projection.get_session("S1").title == "医学检索增强评测"
    assert "gpt-4o-mini" in source.models
    assert rt.projection.get_messages("S1")[-1].content == "Hello"


@pytest.mark.asyncio
async def test_custom_title_is_kept(make_runtime):
    source = TitleAwareSource([StreamDelta(text="不该出现的标题"), StreamDone()])
    rt = make_runtime(source, cfg=TitleSettings())
    await rt.command_bus.dispatch(new_command(CreateSession, "S1", title="我的课题"))
    await rt.command_bus.dispatch(new_command(SendMessage, "S1", text="hello"))
    await settle(rt)

    assert rt.projection.get_session("S1").title == "我的课题"
    assert "gpt-4o-mini" not in source.models


@pytest.mark.asyncio
async def test_title_failure_does_not_affect_chat(make_runtime):
    source = TitleAwareSource([StreamError(message="quota exceeded")])
    rt = make_runtime(source, cfg=TitleSettings())
    await rt.command_bus.dispatch(new_command(SendMessage, "S1", text="hello"))
    await settle(rt)

    assert rt.projection.get_session("S1").title == DEFAULT_SESSION_TITLE
    assert rt.projection.get_messages("S1")[-1].status == "done"
    assert not any(e.type == "SessionRenamed" for e in rt.event_bus.events("S1"))


@pytest.mark.asyncio
async def test_manual_rename_wins(make_runtime):
    source = TitleAwareSource([StreamDelta(text="自动生成的标题"), StreamDone()])
    rt = make_runtime(source, cfg=TitleSettings())
    await rt.command_bus.dispatch(new_command(SendMessage, "S1", text="hello"))
    # 标题任务尚未执行，用户先改了名
    await rt.command_bus.dispatch(new_command(RenameSession, "S1", title="手动标题"))
    await settle(rt)
    assert rt.projection.get_session("S1").title == "手动标题"
