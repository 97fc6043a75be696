"""会话事件（事实）。

事件由 Orchestrator 在处理命令时产生，是读模型唯一的变更来源。
每种事件是一个不可变的 dataclass，整体构成封闭的 SessionEvent 联合类型，
Projector 按具体类型穷举处理。

JSON 形状：
    {"id", "type", "ts", "sessionId", "payload": {...}}
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type, Union

from .envelope import WireFields, body_from_wire, body_to_wire, format_ts, new_id, parse_ts, utcnow
from .exceptions import ValidationError


@dataclass(frozen=True)
class EventEnvelope:
    id: str
    ts: datetime
    session_id: str

    type: ClassVar[str] = ""
    payload_wire: ClassVar[WireFields] = {}
    required_payload: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "ts": format_ts(self.ts),
            "sessionId": self.session_id,
            "payload": body_to_wire(self, self.payload_wire),
        }


_MESSAGE_ID = {"message_id": ("messageId", str)}
_RUN = {"run_id": ("runId", str), "version": ("version", int)}


@dataclass(frozen=True)
class SessionCreated(EventEnvelope):
    title: Optional[str] = None

    type: ClassVar[str] = "SessionCreated"
    payload_wire: ClassVar[WireFields] = {"title": ("title", str)}


@dataclass(frozen=True)
class SessionRenamed(EventEnvelope):
    title: str = ""

    type: ClassVar[str] = "SessionRenamed"
    payload_wire: ClassVar[WireFields] = {"title": ("title", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("title",)


@dataclass(frozen=True)
class DeepResearchModeChanged(EventEnvelope):
    enabled: bool = False

    type: ClassVar[str] = "DeepResearchModeChanged"
    payload_wire: ClassVar[WireFields] = {"enabled": ("enabled", bool)}
    required_payload: ClassVar[Tuple[str, ...]] = ("enabled",)


@dataclass(frozen=True)
class UserMessageAdded(EventEnvelope):
    message_id: str = ""
    text: str = ""

    type: ClassVar[str] = "UserMessageAdded"
    payload_wire: ClassVar[WireFields] = {**_MESSAGE_ID, "text": ("text", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("message_id", "text")


@dataclass(frozen=True)
class AssistantMessageStarted(EventEnvelope):
    message_id: str = ""

    type: ClassVar[str] = "AssistantMessageStarted"
    payload_wire: ClassVar[WireFields] = _MESSAGE_ID
    required_payload: ClassVar[Tuple[str, ...]] = ("message_id",)


@dataclass(frozen=True)
class AssistantMessageDelta(EventEnvelope):
    message_id: str = ""
    delta: str = ""

    type: ClassVar[str] = "AssistantMessageDelta"
    payload_wire: ClassVar[WireFields] = {**_MESSAGE_ID, "delta": ("delta", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("message_id", "delta")


@dataclass(frozen=True)
class AssistantMessageCompleted(EventEnvelope):
    message_id: str = ""

    type: ClassVar[str] = "AssistantMessageCompleted"
    payload_wire: ClassVar[WireFields] = _MESSAGE_ID
    required_payload: ClassVar[Tuple[str, ...]] = ("message_id",)


@dataclass(frozen=True)
class AssistantMessageAborted(EventEnvelope):
    message_id: str = ""
    reason: Optional[str] = None

    type: ClassVar[str] = "AssistantMessageAborted"
    payload_wire: ClassVar[WireFields] = {**_MESSAGE_ID, "reason": ("reason", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("message_id",)


@dataclass(frozen=True)
class AssistantMessageFailed(EventEnvelope):
    message_id: str = ""
    error: str = ""

    type: ClassVar[str] = "AssistantMessageFailed"
    payload_wire: ClassVar[WireFields] = {**_MESSAGE_ID, "error": ("error", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("message_id", "error")


# ---- 深度研究：方向提案 ----------------------------------------------
# 提案消息以 run_id 作为消息 id，每轮提案（包括 refine 之后的新一轮）各占一条。


@dataclass(frozen=True)
class DirectionProposalStarted(EventEnvelope):
    run_id: str = ""
    version: int = 1

    type: ClassVar[str] = "DirectionProposalStarted"
    payload_wire: ClassVar[WireFields] = _RUN
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version")


@dataclass(frozen=True)
class DirectionProposalDelta(EventEnvelope):
    run_id: str = ""
    version: int = 1
    delta: str = ""

    type: ClassVar[str] = "DirectionProposalDelta"
    payload_wire: ClassVar[WireFields] = {**_RUN, "delta": ("delta", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version", "delta")


@dataclass(frozen=True)
class DirectionProposed(EventEnvelope):
    run_id: str = ""
    version: int = 1
    proposal_text: str = ""

    type: ClassVar[str] = "DirectionProposed"
    payload_wire: ClassVar[WireFields] = {**_RUN, "proposal_text": ("proposalText", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version", "proposal_text")


@dataclass(frozen=True)
class DirectionClarificationRequested(EventEnvelope):
    """模型认为用户意图不清晰，没有给出提案，而是提出了追问。"""

    run_id: str = ""
    version: int = 1
    question: str = ""

    type: ClassVar[str] = "DirectionClarificationRequested"
    payload_wire: ClassVar[WireFields] = {**_RUN, "question": ("question", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version", "question")


@dataclass(frozen=True)
class DirectionProposalAborted(EventEnvelope):
    run_id: str = ""
    version: int = 1
    reason: Optional[str] = None

    type: ClassVar[str] = "DirectionProposalAborted"
    payload_wire: ClassVar[WireFields] = {**_RUN, "reason": ("reason", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version")


@dataclass(frozen=True)
class DirectionProposalFailed(EventEnvelope):
    run_id: str = ""
    version: int = 1
    error: str = ""

    type: ClassVar[str] = "DirectionProposalFailed"
    payload_wire: ClassVar[WireFields] = {**_RUN, "error": ("error", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version", "error")


@dataclass(frozen=True)
class DecisionRequested(EventEnvelope):
    run_id: str = ""
    version: int = 1
    kind: str = "direction"

    type: ClassVar[str] = "DecisionRequested"
    payload_wire: ClassVar[WireFields] = {**_RUN, "kind": ("kind", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version")


@dataclass(frozen=True)
class DirectionDecisionRecorded(EventEnvelope):
    run_id: str = ""
    version: int = 1
    action: str = "confirm"
    feedback: Optional[str] = None

    type: ClassVar[str] = "DirectionDecisionRecorded"
    payload_wire: ClassVar[WireFields] = {**_RUN, "action": ("action", str), "feedback": ("feedback", str)}
    required_payload: ClassVar[Tuple[str, ...]] = ("run_id", "version", "action")


@dataclass(frozen=True)
class DirectionConfirmed(EventEnvelope):
    direction_spec: str = ""
    version: int = 1
    run_id: Optional[str] = None

    type: ClassVar[str] = "DirectionConfirmed"
    payload_wire: ClassVar[WireFields] = {
        "direction_spec": ("directionSpec", str),
        "version": ("version", int),
        "run_id": ("runId", str),
    }
    required_payload: ClassVar[Tuple[str, ...]] = ("direction_spec",)


SessionEvent = Union[
    SessionCreated,
    SessionRenamed,
    DeepResearchModeChanged,
    UserMessageAdded,
    AssistantMessageStarted,
    AssistantMessageDelta,
    AssistantMessageCompleted,
    AssistantMessageAborted,
    AssistantMessageFailed,
    DirectionProposalStarted,
    DirectionProposalDelta,
    DirectionProposed,
    DirectionClarificationRequested,
    DirectionProposalAborted,
    DirectionProposalFailed,
    DecisionRequested,
    DirectionDecisionRecorded,
    DirectionConfirmed,
]

EVENT_TYPES: Dict[str, Type[EventEnvelope]] = {
    cls.type: cls
    for cls in (
        SessionCreated,
        SessionRenamed,
        DeepResearchModeChanged,
        UserMessageAdded,
        AssistantMessageStarted,
        AssistantMessageDelta,
        AssistantMessageCompleted,
        AssistantMessageAborted,
        AssistantMessageFailed,
        DirectionProposalStarted,
        DirectionProposalDelta,
        DirectionProposed,
        DirectionClarificationRequested,
        DirectionProposalAborted,
        DirectionProposalFailed,
        DecisionRequested,
        DirectionDecisionRecorded,
        DirectionConfirmed,
    )
}


def new_event(event_cls: Type[EventEnvelope], session_id: str, **payload: Any) -> SessionEvent:
    """用新的 id 和当前时间构造事件。"""

    return event_cls(id=new_id(), ts=utcnow(), session_id=session_id, **payload)


def event_from_dict(data: Mapping[str, Any]) -> SessionEvent:
    """把 JSON 事件解析为具体事件（用于回放导出的事件日志）。"""

    if not isinstance(data, Mapping):
        raise ValidationError(code="INVALID_EVENT", message="event must be an object")
    etype = data.get("type")
    cls = EVENT_TYPES.get(etype)
    if cls is None:
        raise ValidationError(code="UNKNOWN_EVENT", message=f"Unknown event type: {etype!r}")
    for key in ("id", "ts", "sessionId"):
        if data.get(key) is None:
            raise ValidationError(code="MISSING_FIELD", message=f"event.{key} is required")
    payload = data.get("payload") or {}
    if not isinstance(payload, Mapping):
        raise ValidationError(code="INVALID_EVENT", message="event.payload must be an object")
    kwargs = body_from_wire(payload, cls.payload_wire, cls.required_payload, f"{etype}.payload")
    return cls(id=str(data["id"]), ts=parse_ts(data["ts"]), session_id=str(data["sessionId"]), **kwargs)
