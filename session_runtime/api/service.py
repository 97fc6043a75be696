"""对外 API 服务模块。

提供给 UI 层的简化函数接口：
- 读：get_sessions / get_messages，返回可直接 JSON 序列化的字典；
- 写：dispatch 是唯一写入口，其余辅助函数只是用新的命令 id 构造命令后转发。
"""

from typing import Any, Dict, List, Mapping, Optional, Union

from session_runtime.domain.commands import (
    Command,
    ConfirmDirection,
    CreateSession,
    DecideDirection,
    ProposeDirection,
    RenameSession,
    SendMessage,
    StopStreaming,
    ToggleDeepResearch,
    command_from_dict,
    new_command,
)
from session_runtime.domain.envelope import format_ts, new_id
from session_runtime.domain.session import Message, Session
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.runtime.bootstrap import SessionRuntime, ensure_runtime


def get_runtime() -> SessionRuntime:
    """获取进程唯一的会话运行时（不存在时按默认配置创建）。"""
    return ensure_runtime()


async def dispatch(command: Union[Command, Mapping[str, Any]]) -> None:
    """分发命令。

    Args:
        command: 命令对象，或前端传来的 JSON 字典 {id, type, ts, sessionId, params}

    Raises:
        ValidationError: JSON 命令格式不合法
        以及命令处理过程中的意外异常
    """
    if isinstance(command, Mapping):
        command = command_from_dict(command)
    try:
        await get_runtime().command_bus.dispatch(command)
    except Exception as e:
        logger.error("Dispatch failed", extra={"extra": {
            "command_id": command.id,
            "command_type": command.type,
            "session_id": command.session_id,
            "error": str(e),
        }})
        raise


async def create_session(title: Optional[str] = None, session_id: Optional[str] = None) -> str:
    """创建会话，返回会话 ID。"""
    session_id = session_id or new_id()
    await dispatch(new_command(CreateSession, session_id, title=title))
    return session_id


async def rename_session(session_id: str, title: str) -> None:
    await dispatch(new_command(RenameSession, session_id, title=title))


async def toggle_deep_research(session_id: str, enabled: bool) -> None:
    await dispatch(new_command(ToggleDeepResearch, session_id, enabled=enabled))


async def confirm_direction(session_id: str, spec: str) -> None:
    await dispatch(new_command(ConfirmDirection, session_id, spec=spec))


async def propose_direction(session_id: str, user_query: str) -> None:
    """手动发起一轮方向提案（通常由方向监督器自动发起）。"""
    await dispatch(new_command(ProposeDirection, session_id, user_query=user_query))


async def decide_direction(session_id: str, action: str, feedback: Optional[str] = None) -> None:
    """对待决提案做决定：confirm / refine / cancel。

    Raises:
        ValidationError: action 不是 confirm / refine / cancel
    """
    await dispatch(new_command(DecideDirection, session_id, action=action, feedback=feedback))


async def send_message(session_id: str, text: str, command_id: Optional[str] = None) -> str:
    """发送用户消息，返回命令 ID（可用于重发时去重）。"""
    command = new_command(SendMessage, session_id, text=text)
    if command_id:
        command = SendMessage(id=command_id, ts=command.ts, session_id=session_id, text=text)
    await dispatch(command)
    return command.id


async def stop_streaming(session_id: str) -> None:
    await dispatch(new_command(StopStreaming, session_id))


def get_sessions() -> List[Dict[str, Any]]:
    """列出所有会话（最近更新在前）。

    Returns:
        会话列表，每项包含 id, title, deepResearchEnabled, direction, createdAt, updatedAt
    """
    return [_session_to_dict(s) for s in get_runtime().projection.get_sessions()]


def get_messages(session_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息（按创建顺序）。"""
    return [_message_to_dict(m) for m in get_runtime().projection.get_messages(session_id)]


def _session_to_dict(s: Session) -> Dict[str, Any]:
    return {
        "id": s.id,
        "title": s.title,
        "deepResearchEnabled": s.deep_research_enabled,
        "direction": {
            "confirmed": s.direction.confirmed,
            "spec": s.direction.spec,
            "version": s.direction.version,
            "awaitingDecision": s.direction.awaiting_decision,
        },
        "messageCount": len(s.messages),
        "createdAt": format_ts(s.created_at),
        "updatedAt": format_ts(s.updated_at),
    }


def _message_to_dict(m: Message) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "id": m.id,
        "sessionId": m.session_id,
        "role": m.role,
        "content": m.content,
        "status": m.status,
        "createdAt": format_ts(m.created_at),
    }
    if m.error is not None:
        item["error"] = m.error
    if m.reason is not None:
        item["reason"] = m.reason
    return item
