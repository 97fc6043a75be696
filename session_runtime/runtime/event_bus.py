"""事件总线：进程内事件日志 + 订阅通知。

publish 先把事件追加到内存日志，再按订阅顺序通知订阅者。
协程订阅者会被 await；订阅者抛错只记录日志，不影响发布方。
本模块不包含任何业务逻辑。
"""

import inspect
from typing import Awaitable, Callable, List, Optional, Union

from session_runtime.domain.events import SessionEvent
from session_runtime.infrastructure.logging.logger import logger

EventHandler = Callable[[SessionEvent], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self, bus_id: str = "evbus") -> None:
        self.bus_id = bus_id
        self._log: List[SessionEvent] = []
        self._subscribers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return unsubscribe

    async def publish(self, event: SessionEvent) -> None:
        self._log.append(event)
        for handler in list(self._subscribers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - 订阅者错误不能中断事件流
                logger.warning(
                    "Event subscriber failed",
                    extra={"extra": {
                        "bus_id": self.bus_id,
                        "event_type": event.type,
                        "session_id": event.session_id,
                        "error": str(exc),
                    }},
                )

    def events(self, session_id: Optional[str] = None) -> List[SessionEvent]:
        """返回事件日志副本，可按会话过滤。"""

        if session_id is None:
            return list(self._log)
        return [e for e in self._log if e.session_id == session_id]

