"""命令总线：唯一的写入口。

只做转发：不重试、不排队、不校验。处理函数抛出的异常原样传给
dispatch 的调用方。
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from session_runtime.domain.commands import Command
from session_runtime.domain.exceptions import BusinessError
from session_runtime.infrastructure.logging.logger import logger

CommandHandler = Callable[[Command], Awaitable[None]]


class CommandBus:
    def __init__(self, bus_id: str = "cmdbus") -> None:
        self.bus_id = bus_id
        self._handler: Optional[CommandHandler] = None

    def register(self, handler: CommandHandler) -> bool:
        """安装处理函数。进程内只允许一个，重复注册不会替换已有的。"""

        if self._handler is not None:
            _log(
                logging.WARNING,
                "Command handler already registered, ignored",
                {"bus_id": self.bus_id},
                same_handler=self._handler == handler,
            )
            return False
        self._handler = handler
        _log(logging.INFO, "Command handler registered", {"bus_id": self.bus_id})
        return True

    async def dispatch(self, command: Command) -> None:
        if self._handler is None:
            raise BusinessError(
                code="NO_COMMAND_HANDLER",
                message=f"No handler registered for {command.type}",
                http_status=503,
            )
        await self._handler(command)


def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
