"""会话标题生成。

订阅 UserMessageAdded：会话标题为空或仍是默认标题时，用 task 模型生成
一个简短标题，再通过命令总线发出 RenameSession。生成失败只记录日志。
"""

import asyncio
import re
import unicodedata
from typing import Set

from session_runtime.config.settings import settings
from session_runtime.domain.commands import RenameSession, new_command
from session_runtime.domain.events import SessionEvent, UserMessageAdded
from session_runtime.domain.models import CancellationToken, StreamDelta, StreamError
from session_runtime.domain.session import DEFAULT_TITLES
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.prompts import build_title_prompt
from session_runtime.providers.base import StreamingTextSource
from session_runtime.providers.registry import resolve_model_for_purpose
from session_runtime.runtime.command_bus import CommandBus
from session_runtime.runtime.event_bus import EventBus
from session_runtime.runtime.projector import Projection

MAX_TITLE_CHARS = 12
MIN_TITLE_CHARS = 4
FALLBACK_TITLE_CHARS = 10


def sanitize_title(raw: str, user_text: str) -> str:
    """取第一行，去掉空白、标点与符号，截断到 12 个字符；太短时回退到用户原文。"""

    lines = (raw or "").strip().splitlines()
    title = _strip_punct(lines[0] if lines else "")
    if not title:
        return ""
    title = title[:MAX_TITLE_CHARS]
    if len(title) < MIN_TITLE_CHARS and user_text:
        title = _strip_punct(user_text)[:FALLBACK_TITLE_CHARS] or "研究会话"
    return title


def _strip_punct(text: str) -> str:
    # Unicode 类别 P*（标点）与 S*（符号）
    text = re.sub(r"\s+", "", text)
    return "".join(ch for ch in text if unicodedata.category(ch)[0] not in ("P", "S"))


class TitleSupervisor:
    def __init__(
        self,
        event_bus: EventBus,
        command_bus: CommandBus,
        projection: Projection,
        text_source: StreamingTextSource,
        cfg=settings,
    ):
        self._event_bus = event_bus
        self._command_bus = command_bus
        self._projection = projection
        self._source = text_source
        self._settings = cfg
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._event_bus.subscribe(self._on_event)

    @property
    def busy(self) -> bool:
        return bool(self._tasks)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_event(self, e: SessionEvent) -> None:
        if not isinstance(e, UserMessageAdded):
            return
        session_id = e.session_id
        session = self._projection.get_session(session_id)
        if session is not None and session.title and session.title not in DEFAULT_TITLES:
            return
        if not (e.text or "").strip() or session_id in self._in_flight:
            return
        self._in_flight.add(session_id)
        # 不阻塞 publish：标题生成在后台进行
        task = asyncio.get_running_loop().create_task(self._generate(session_id, e.text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _generate(self, session_id: str, user_text: str) -> None:
        log_extra = {"session_id": session_id}
        try:
            buf = ""
            stream = self._source.start_text_stream(
                [build_title_prompt(user_text, self._settings.title_locale)],
                signal=CancellationToken(),
                model_override=resolve_model_for_purpose("task", self._settings),
                temperature=0.2,
                batching_interval_ms=0,
            )
            async for item in stream:
                if isinstance(item, StreamDelta):
                    buf += item.text
                elif isinstance(item, StreamError):
                    logger.warning("Title generation failed", extra={"extra": {**log_extra, "error": item.message}})
                    return
            title = sanitize_title(buf, user_text)
            if not title:
                return
            # 生成期间用户可能已经手动改名
            session = self._projection.get_session(session_id)
            if session is not None and session.title and session.title not in DEFAULT_TITLES:
                return
            await self._command_bus.dispatch(new_command(RenameSession, session_id, title=title))
            logger.info("Session title generated", extra={"extra": {**log_extra, "title": title}})
        except Exception as exc:  # noqa: BLE001 - 标题生成失败不影响对话
            logger.warning("Title generation failed", extra={"extra": {**log_extra, "error": str(exc)}})
        finally:
            self._in_flight.discard(session_id)
