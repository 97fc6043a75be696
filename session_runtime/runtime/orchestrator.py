"""会话编排器。

把命令翻译为事件，并协调助手流式运行：

- 每个事件都先 publish 再投影，之后才发出同一因果链上的下一个事件；
- SendMessage 以命令 id 做幂等键，id 在任何 await 之前登记；
- 同一会话同时只允许一个运行，冲突的 SendMessage 被拒绝而不是排队；
- 运行的终止回调先释放 running 槽位，再发出终止事件；
- 深度研究的方向提案交给 DirectionFlow，与助手回复共用 running 槽位。

重复命令与并发冲突在这里记录并吞掉；模型错误转成 AssistantMessageFailed。
只有处理命令时出现的意外异常才会传给 dispatch 的调用方。
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from session_runtime.config.settings import settings
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
)
from session_runtime.domain.envelope import new_id
from session_runtime.domain.events import (
    AssistantMessageAborted,
    AssistantMessageCompleted,
    AssistantMessageDelta,
    AssistantMessageFailed,
    AssistantMessageStarted,
    DeepResearchModeChanged,
    SessionCreated,
    SessionEvent,
    SessionRenamed,
    UserMessageAdded,
    new_event,
)
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.prompts import ContextBuilder
from session_runtime.runtime.command_bus import CommandBus
from session_runtime.runtime.context import RuntimeContext
from session_runtime.runtime.direction import DirectionFlow
from session_runtime.runtime.event_bus import EventBus
from session_runtime.runtime.executor import RunCallbacks, StreamingExecutor
from session_runtime.runtime.projector import Projection


class Orchestrator:
    def __init__(
        self,
        ctx: RuntimeContext,
        command_bus: CommandBus,
        event_bus: EventBus,
        projection: Projection,
        executor: StreamingExecutor,
        context_builder: ContextBuilder,
        cfg=settings,
    ):
        self._ctx = ctx
        self._command_bus = command_bus
        self._event_bus = event_bus
        self._projection = projection
        self._executor = executor
        self._context_builder = context_builder
        self._settings = cfg
        self._direction = DirectionFlow(ctx, self.emit, projection, executor, cfg)

    def register(self) -> bool:
        """向命令总线注册 handle；同一 RuntimeContext 只注册一次。"""

        if self._ctx.orchestrator_registered:
            self._log(logging.INFO, "Orchestrator already registered", {})
            return False
        self._ctx.orchestrator_registered = True
        return self._command_bus.register(self.handle)

    async def emit(self, event: SessionEvent) -> None:
        await self._event_bus.publish(event)
        self._projection.apply(event)

    async def handle(self, cmd: Command) -> None:
        log_ctx = {"command_id": cmd.id, "command_type": cmd.type, "session_id": cmd.session_id}
        self._log(logging.INFO, "Handling command", log_ctx)
        if isinstance(cmd, CreateSession):
            session_id = cmd.session_id or new_id()
            await self.emit(new_event(SessionCreated, session_id, title=cmd.title))
        elif isinstance(cmd, RenameSession):
            await self.emit(new_event(SessionRenamed, cmd.session_id, title=cmd.title))
        elif isinstance(cmd, ToggleDeepResearch):
            await self.emit(new_event(DeepResearchModeChanged, cmd.session_id, enabled=cmd.enabled))
        elif isinstance(cmd, ProposeDirection):
            await self._direction.propose(cmd, log_ctx)
        elif isinstance(cmd, DecideDirection):
            await self._direction.decide(cmd, log_ctx)
        elif isinstance(cmd, ConfirmDirection):
            await self._direction.confirm(cmd, log_ctx)
        elif isinstance(cmd, SendMessage):
            await self._send_message(cmd, log_ctx)
        elif isinstance(cmd, StopStreaming):
            run = self._ctx.running.get(cmd.session_id)
            if run is None:
                self._log(logging.INFO, "No running stream to stop", log_ctx)
                return
            run.abort("user")
            self._log(logging.INFO, "Abort requested", log_ctx, run_id=run.run_id)
        else:
            # 未知命令只记录告警；JSON 入口已经用 UNKNOWN_COMMAND 拒绝了未注册的类型
            self._log(logging.WARNING, "Unknown command ignored", log_ctx)

    @property
    def idle(self) -> bool:
        return all(h.done for h in self._ctx.running.values())

    async def wait_idle(self) -> None:
        """等待当前所有运行（助手回复与方向提案）结束。"""

        while True:
            live = [h for h in self._ctx.running.values() if not h.done]
            if not live:
                return
            await asyncio.gather(*(h.join() for h in live), return_exceptions=True)

    # ---- SendMessage ---------------------------------------------

    async def _send_message(self, cmd: SendMessage, log_ctx: Dict[str, Any]) -> None:
        session_id = cmd.session_id
        if cmd.id in self._ctx.handled_command_ids:
            self._log(logging.WARNING, "Duplicate command suppressed", log_ctx)
            return
        self._ctx.handled_command_ids.add(cmd.id)

        await self.emit(new_event(UserMessageAdded, session_id, message_id=new_id(), text=cmd.text))

        session = self._projection.get_session(session_id)
        if session and session.deep_research_enabled and not session.direction.confirmed:
            # 深度研究的方向确认阶段只记录用户消息，提案由 DirectionSupervisor 发起
            self._log(logging.INFO, "Skip chat while direction is unconfirmed", log_ctx)
            return

        messages = await self._context_builder.build_assistant_messages(
            session_id, cmd.text, self._settings.context_window_size
        )
        if session_id in self._ctx.running:
            self._log(
                logging.WARNING,
                "Run already active for session, rejected",
                log_ctx,
                active_run_id=self._ctx.running[session_id].run_id,
            )
            return

        assistant_mid = new_id()
        handle = self._executor.start(messages, self._callbacks(session_id, assistant_mid), run_id=assistant_mid)
        # 任务尚未开始执行，登记一定先于任何回调
        self._ctx.running[session_id] = handle
        self._log(logging.INFO, "Run started", log_ctx, run_id=assistant_mid, prompt_parts=len(messages))

    def _callbacks(self, session_id: str, message_id: str) -> RunCallbacks:
        def release() -> None:
            run = self._ctx.running.get(session_id)
            if run is not None and run.run_id == message_id:
                del self._ctx.running[session_id]

        async def on_start() -> None:
            await self.emit(new_event(AssistantMessageStarted, session_id, message_id=message_id))

        async def on_delta(delta: str) -> None:
            await self.emit(new_event(AssistantMessageDelta, session_id, message_id=message_id, delta=delta))

        async def on_done() -> None:
            release()
            await self.emit(new_event(AssistantMessageCompleted, session_id, message_id=message_id))

        async def on_abort(reason: Optional[str]) -> None:
            release()
            await self.emit(new_event(AssistantMessageAborted, session_id, message_id=message_id, reason=reason))

        async def on_error(message: str) -> None:
            release()
            await self.emit(new_event(AssistantMessageFailed, session_id, message_id=message_id, error=message))

        return RunCallbacks(on_start=on_start, on_delta=on_delta, on_done=on_done, on_abort=on_abort, on_error=on_error)

    def _log(self, level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = {"runtime": self._ctx.context_id}
        payload.update(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
