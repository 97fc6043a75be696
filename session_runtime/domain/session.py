from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Literal, Optional, Protocol

Role = Literal["user", "assistant", "system"]
MessageStatus = Literal["pending", "streaming", "done", "aborted", "failed"]

TERMINAL_STATUSES = frozenset({"done", "aborted", "failed"})

# 前端创建会话时使用的默认标题；标题生成器只覆盖这些标题
DEFAULT_SESSION_TITLE = "新研究会话"
DEFAULT_TITLES = frozenset({DEFAULT_SESSION_TITLE, "未命名研究"})


@dataclass
class DirectionState:
    confirmed: bool = False
    spec: str = ""
    version: int = 0
    # 已给出提案、等待用户 confirm / refine / cancel
    awaiting_decision: bool = False


@dataclass
class Message:
    id: str
    session_id: str
    role: Role
    content: str
    status: MessageStatus
    created_at: datetime
    error: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class Session:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    deep_research_enabled: bool = False
    direction: DirectionState = field(default_factory=DirectionState)
    messages: List[Message] = field(default_factory=list)


class MessageStore(Protocol):
    """ContextBuilder 读取历史消息时依赖的持久化协作者。"""

    async def list_messages(self, session_id: str) -> List[Message]:
        ...
