"""会话命令（意图）。

每种命令是一个不可变的 dataclass，整体构成封闭的 Command 联合类型。
命令 id 同时是幂等键：Orchestrator 依赖它抑制重复投递的 SendMessage。

JSON 形状与前端保持一致：
    {"id", "type", "ts", "sessionId", "params": {...}}
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type, Union

from .envelope import WireFields, body_from_wire, body_to_wire, format_ts, new_id, parse_ts, utcnow
from .exceptions import ValidationError

DECISION_ACTIONS = ("confirm", "refine", "cancel")


@dataclass(frozen=True)
class CommandEnvelope:
    id: str
    ts: datetime
    session_id: Optional[str]

    type: ClassVar[str] = ""
    params_wire: ClassVar[WireFields] = {}
    required_params: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "ts": format_ts(self.ts),
            "sessionId": self.session_id,
            "params": body_to_wire(self, self.params_wire),
        }


@dataclass(frozen=True)
class CreateSession(CommandEnvelope):
    title: Optional[str] = None

    type: ClassVar[str] = "CreateSession"
    params_wire: ClassVar[WireFields] = {"title": ("title", str)}


@dataclass(frozen=True)
class RenameSession(CommandEnvelope):
    title: str = ""

    type: ClassVar[str] = "RenameSession"
    params_wire: ClassVar[WireFields] = {"title": ("title", str)}
    required_params: ClassVar[Tuple[str, ...]] = ("title",)


@dataclass(frozen=True)
class ToggleDeepResearch(CommandEnvelope):
    enabled: bool = False

    type: ClassVar[str] = "ToggleDeepResearch"
    params_wire: ClassVar[WireFields] = {"enabled": ("enabled", bool)}
    required_params: ClassVar[Tuple[str, ...]] = ("enabled",)


@dataclass(frozen=True)
class SendMessage(CommandEnvelope):
    text: str = ""

    type: ClassVar[str] = "SendMessage"
    params_wire: ClassVar[WireFields] = {"text": ("text", str)}
    required_params: ClassVar[Tuple[str, ...]] = ("text",)


@dataclass(frozen=True)
class StopStreaming(CommandEnvelope):
    type: ClassVar[str] = "StopStreaming"


@dataclass(frozen=True)
class ProposeDirection(CommandEnvelope):
    """为深度研究生成一轮方向提案，通常由方向监督器在用户发言后发出。"""

    user_query: str = ""

    type: ClassVar[str] = "ProposeDirection"
    params_wire: ClassVar[WireFields] = {"user_query": ("userQuery", str)}
    required_params: ClassVar[Tuple[str, ...]] = ("user_query",)


@dataclass(frozen=True)
class DecideDirection(CommandEnvelope):
    """用户对当前提案的决定：confirm / refine（附反馈）/ cancel。"""

    action: str = "confirm"
    feedback: Optional[str] = None

    type: ClassVar[str] = "DecideDirection"
    params_wire: ClassVar[WireFields] = {"action": ("action", str), "feedback": ("feedback", str)}
    required_params: ClassVar[Tuple[str, ...]] = ("action",)

    def __post_init__(self) -> None:
        if self.action not in DECISION_ACTIONS:
            raise ValidationError(code="INVALID_FIELD", message=f"DecideDirection.params.action: {self.action!r}")


@dataclass(frozen=True)
class ConfirmDirection(CommandEnvelope):
    """直接确认研究方向（跳过提案）；确认后的方向会进入助手上下文。"""

    spec: str = ""
    version: Optional[int] = None

    type: ClassVar[str] = "ConfirmDirection"
    params_wire: ClassVar[WireFields] = {"spec": ("spec", str), "version": ("version", int)}
    required_params: ClassVar[Tuple[str, ...]] = ("spec",)


Command = Union[
    CreateSession,
    RenameSession,
    ToggleDeepResearch,
    SendMessage,
    StopStreaming,
    ProposeDirection,
    DecideDirection,
    ConfirmDirection,
]

COMMAND_TYPES: Dict[str, Type[CommandEnvelope]] = {
    cls.type: cls
    for cls in (
        CreateSession,
        RenameSession,
        ToggleDeepResearch,
        SendMessage,
        StopStreaming,
        ProposeDirection,
        DecideDirection,
        ConfirmDirection,
    )
}

# 除 CreateSession 外，其余命令都必须指明会话
_SESSION_OPTIONAL = {CreateSession.type}


def new_command(command_cls: Type[CommandEnvelope], session_id: Optional[str] = None, **params: Any) -> Command:
    """用新的 id 和当前时间构造命令。"""

    return command_cls(id=new_id(), ts=utcnow(), session_id=session_id, **params)


def command_from_dict(data: Mapping[str, Any]) -> Command:
    """把前端 JSON 解析为具体命令。

    sessionId 既可以放在顶层，也可以放在 params 里（旧版 UI 的写法）。
    """

    if not isinstance(data, Mapping):
        raise ValidationError(code="INVALID_COMMAND", message="command must be an object")
    ctype = data.get("type")
    cls = COMMAND_TYPES.get(ctype)
    if cls is None:
        raise ValidationError(code="UNKNOWN_COMMAND", message=f"Unknown command type: {ctype!r}")
    cid = data.get("id")
    if not cid:
        raise ValidationError(code="MISSING_FIELD", message="command.id is required")
    params = data.get("params") or {}
    if not isinstance(params, Mapping):
        raise ValidationError(code="INVALID_COMMAND", message="command.params must be an object")
    session_id = data.get("sessionId") or params.get("sessionId")
    if not session_id and ctype not in _SESSION_OPTIONAL:
        raise ValidationError(code="MISSING_FIELD", message=f"{ctype}.sessionId is required")
    kwargs = body_from_wire(params, cls.params_wire, cls.required_params, f"{ctype}.params")
    ts = parse_ts(data["ts"]) if data.get("ts") is not None else utcnow()
    return cls(id=str(cid), ts=ts, session_id=str(session_id) if session_id else None, **kwargs)
