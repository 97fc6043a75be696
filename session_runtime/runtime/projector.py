"""读模型投影。

Projection 是会话读模型的唯一拥有者：所有变更都通过 apply(event) 完成，
其他组件只能使用 get_sessions / get_messages 等只读选择器。

apply 对事件类型穷举处理，且只使用事件自身携带的数据（包括时间戳），
因此按相同顺序回放同一组事件，一定得到相同的读模型。
"""

from typing import Dict, Iterable, List, Optional

from session_runtime.domain.events import (
    AssistantMessageAborted,
    AssistantMessageCompleted,
    AssistantMessageDelta,
    AssistantMessageFailed,
    AssistantMessageStarted,
    DecisionRequested,
    DeepResearchModeChanged,
    DirectionClarificationRequested,
    DirectionConfirmed,
    DirectionDecisionRecorded,
    DirectionProposalAborted,
    DirectionProposalDelta,
    DirectionProposalFailed,
    DirectionProposalStarted,
    DirectionProposed,
    SessionCreated,
    SessionEvent,
    SessionRenamed,
    UserMessageAdded,
)
from session_runtime.domain.session import DEFAULT_SESSION_TITLE, DirectionState, Message, Session
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.prompts import extract_direction_text

DECISION_NOTES = {"confirm": "已确认方向。", "cancel": "已取消方向。"}


class Projection:
    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    @classmethod
    def replay(cls, events: Iterable[SessionEvent]) -> "Projection":
        """从有序事件序列重建一个全新的读模型。"""

        projection = cls()
        for event in events:
            projection.apply(event)
        return projection

    # ---- selectors -----------------------------------------------

    def get_sessions(self) -> List[Session]:
        """按最近更新时间倒序返回所有会话。"""

        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_messages(self, session_id: str) -> List[Message]:
        session = self._sessions.get(session_id)
        return list(session.messages) if session else []

    # ---- apply ---------------------------------------------------

    def apply(self, e: SessionEvent) -> None:
        if isinstance(e, SessionCreated):
            if e.session_id in self._sessions:
                _ignored(e, "session already exists")
                return
            self._sessions[e.session_id] = Session(
                id=e.session_id,
                title=e.title or DEFAULT_SESSION_TITLE,
                created_at=e.ts,
                updated_at=e.ts,
            )
        elif isinstance(e, SessionRenamed):
            session = self._existing(e)
            if session:
                session.title = e.title
                session.updated_at = e.ts
        elif isinstance(e, DeepResearchModeChanged):
            session = self._existing(e)
            if session:
                session.deep_research_enabled = bool(e.enabled)
                session.updated_at = e.ts
        elif isinstance(e, DirectionConfirmed):
            session = self._existing(e)
            if session:
                session.direction = DirectionState(confirmed=True, spec=e.direction_spec, version=e.version)
                self._add_message(e, self._note(e, f"方向确定：\n{e.direction_spec}"))
        elif isinstance(e, DirectionProposalStarted):
            self._add_message(e, Message(
                id=e.run_id,
                session_id=e.session_id,
                role="assistant",
                content="",
                status="streaming",
                created_at=e.ts,
            ))
        elif isinstance(e, DirectionProposalDelta):
            message = self._open_message(e, e.run_id)
            if message:
                message.content += e.delta
                self._sessions[e.session_id].updated_at = e.ts
        elif isinstance(e, DirectionProposed):
            message = self._finish(e, e.run_id, "done")
            if message:
                message.content = extract_direction_text(e.proposal_text)
        elif isinstance(e, DirectionClarificationRequested):
            message = self._finish(e, e.run_id, "done")
            if message:
                message.content = e.question
        elif isinstance(e, DirectionProposalAborted):
            message = self._finish(e, e.run_id, "aborted")
            if message:
                message.reason = e.reason
        elif isinstance(e, DirectionProposalFailed):
            message = self._finish(e, e.run_id, "failed")
            if message:
                message.error = e.error
        elif isinstance(e, DecisionRequested):
            session = self._existing(e)
            if session:
                session.direction.awaiting_decision = True
                session.direction.version = e.version
                session.updated_at = e.ts
        elif isinstance(e, DirectionDecisionRecorded):
            session = self._existing(e)
            if session:
                session.direction.awaiting_decision = False
                note = DECISION_NOTES.get(e.action) or f"请求细化：{e.feedback or ''}"
                self._add_message(e, self._note(e, note))
        elif isinstance(e, UserMessageAdded):
            self._add_message(e, Message(
                id=e.message_id,
                session_id=e.session_id,
                role="user",
                content=e.text,
                status="done",
                created_at=e.ts,
            ))
        elif isinstance(e, AssistantMessageStarted):
            self._add_message(e, Message(
                id=e.message_id,
                session_id=e.session_id,
                role="assistant",
                content="",
                status="streaming",
                created_at=e.ts,
            ))
        elif isinstance(e, AssistantMessageDelta):
            message = self._open_message(e, e.message_id)
            if message:
                message.content += e.delta
                self._sessions[e.session_id].updated_at = e.ts
        elif isinstance(e, AssistantMessageCompleted):
            self._finish(e, e.message_id, "done")
        elif isinstance(e, AssistantMessageAborted):
            message = self._finish(e, e.message_id, "aborted")
            if message:
                message.reason = e.reason
        elif isinstance(e, AssistantMessageFailed):
            message = self._finish(e, e.message_id, "failed")
            if message:
                message.error = e.error
        else:
            _ignored(e, "unknown event type")

    # ---- helpers -------------------------------------------------

    @staticmethod
    def _note(e: SessionEvent, content: str) -> Message:
        # 系统提示消息以事件 id 为消息 id，回放时保持稳定
        return Message(id=e.id, session_id=e.session_id, role="system", content=content, status="done", created_at=e.ts)

    def _existing(self, e: SessionEvent) -> Optional[Session]:
        session = self._sessions.get(e.session_id)
        if session is None:
            _ignored(e, "unknown session")
        return session

    def _add_message(self, e: SessionEvent, message: Message) -> None:
        session = self._sessions.get(e.session_id)
        if session is None:
            # 消息不能丢：会话事件缺失时按事件时间补建会话
            session = Session(id=e.session_id, title=DEFAULT_SESSION_TITLE, created_at=e.ts, updated_at=e.ts)
            self._sessions[e.session_id] = session
        if any(m.id == message.id for m in session.messages):
            _ignored(e, "message already exists")
            return
        session.messages.append(message)
        session.updated_at = e.ts

    def _open_message(self, e: SessionEvent, message_id: str) -> Optional[Message]:
        """返回仍可变更的消息；终态消息不可再修改。"""

        session = self._sessions.get(e.session_id)
        message = None
        if session is not None:
            message = next((m for m in session.messages if m.id == message_id), None)
        if message is None:
            _ignored(e, "unknown message")
            return None
        if message.is_terminal:
            _ignored(e, f"message already {message.status}")
            return None
        return message

    def _finish(self, e: SessionEvent, message_id: str, status: str) -> Optional[Message]:
        message = self._open_message(e, message_id)
        if message:
            message.status = status
            self._sessions[e.session_id].updated_at = e.ts
        return message


def _ignored(e: SessionEvent, why: str) -> None:
    logger.info(
        "Projection ignored event",
        extra={"extra": {"event_type": e.type, "event_id": e.id, "session_id": e.session_id, "why": why}},
    )
