"""深度研究的方向提案流程。

DirectionFlow 处理 ProposeDirection / DecideDirection / ConfirmDirection：

- 提案通过 StreamingExecutor 流式生成，与助手回复共用 running 槽位，
  因此同一会话的提案和对话不会同时进行，StopStreaming 也能中止提案；
- 模型输出带 <direction> 标记时发出 DirectionProposed + DecisionRequested，
  否则视为澄清问题，轮次回到 idle；
- confirm 把提案正文作为已确认方向，refine 带反馈重新提案（版本号加一），
  cancel 结束本轮。

DirectionSupervisor 订阅事件：深度研究开启、方向未确认且没有待决提案时，
用户发言（或开启深度研究时的最近一条用户消息）会触发一轮提案。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from session_runtime.config.settings import settings
from session_runtime.domain.commands import ConfirmDirection, DecideDirection, ProposeDirection, new_command
from session_runtime.domain.envelope import new_id
from session_runtime.domain.events import (
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
    SessionEvent,
    UserMessageAdded,
    new_event,
)
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.prompts import (
    CLARIFY_FALLBACK,
    build_direction_prompt,
    extract_direction_text,
    has_direction_marker,
)
from session_runtime.runtime.command_bus import CommandBus
from session_runtime.runtime.context import DirectionRound, RuntimeContext
from session_runtime.runtime.event_bus import EventBus
from session_runtime.runtime.executor import RunCallbacks, StreamingExecutor
from session_runtime.runtime.projector import Projection

PROPOSAL_TEMPERATURE = 0.6

Emit = Callable[[SessionEvent], Awaitable[None]]


class DirectionFlow:
    def __init__(
        self,
        ctx: RuntimeContext,
        emit: Emit,
        projection: Projection,
        executor: StreamingExecutor,
        cfg=settings,
    ):
        self._ctx = ctx
        self._emit = emit
        self._projection = projection
        self._executor = executor
        self._settings = cfg

    async def propose(self, cmd: ProposeDirection, log_ctx: Dict[str, Any]) -> None:
        session_id = cmd.session_id
        current = self._ctx.direction_rounds.get(session_id)
        if current is not None and current.phase in ("proposing", "awaiting"):
            self._log(logging.INFO, "Direction round in progress, proposal ignored", log_ctx, phase=current.phase)
            return
        if session_id in self._ctx.running:
            self._log(
                logging.WARNING,
                "Run already active for session, proposal rejected",
                log_ctx,
                active_run_id=self._ctx.running[session_id].run_id,
            )
            return

        session = self._projection.get_session(session_id)
        rnd = DirectionRound(
            user_query=cmd.user_query,
            version=(session.direction.version if session else 0) + 1,
        )
        self._ctx.direction_rounds[session_id] = rnd
        self._start(session_id, rnd, log_ctx)

    async def decide(self, cmd: DecideDirection, log_ctx: Dict[str, Any]) -> None:
        session_id = cmd.session_id
        rnd = self._ctx.direction_rounds.get(session_id)
        if rnd is None or rnd.phase != "awaiting":
            self._log(
                logging.WARNING,
                "No proposal awaiting decision, decision ignored",
                log_ctx,
                action=cmd.action,
                phase=rnd.phase if rnd else None,
            )
            return
        run_id, version = rnd.run_id, rnd.version

        if cmd.action == "confirm":
            rnd.phase = "done"
            await self._emit(new_event(
                DirectionDecisionRecorded, session_id, run_id=run_id, version=version, action="confirm"
            ))
            await self._emit(new_event(
                DirectionConfirmed,
                session_id,
                direction_spec=extract_direction_text(rnd.last_proposal),
                version=version,
                run_id=run_id,
            ))
        elif cmd.action == "refine":
            # 先占住轮次，await 期间到达的重复决定会被忽略
            rnd.phase = "proposing"
            await self._emit(new_event(
                DirectionDecisionRecorded,
                session_id,
                run_id=run_id,
                version=version,
                action="refine",
                feedback=cmd.feedback,
            ))
            if session_id in self._ctx.running:
                rnd.phase = "idle"
                self._log(logging.WARNING, "Run already active for session, refine not started", log_ctx)
                return
            rnd.version = version + 1
            rnd.feedback = cmd.feedback
            self._start(session_id, rnd, log_ctx)
        else:
            rnd.phase = "idle"
            await self._emit(new_event(
                DirectionDecisionRecorded, session_id, run_id=run_id, version=version, action="cancel"
            ))
        self._log(logging.INFO, "Direction decision recorded", log_ctx, action=cmd.action, version=version)

    async def confirm(self, cmd: ConfirmDirection, log_ctx: Dict[str, Any]) -> None:
        """直接确认方向；正在进行的提案轮次随之结束。"""

        session_id = cmd.session_id
        version = cmd.version
        if version is None:
            session = self._projection.get_session(session_id)
            version = (session.direction.version if session else 0) + 1

        rnd = self._ctx.direction_rounds.get(session_id)
        if rnd is not None:
            proposing = rnd.phase == "proposing"
            rnd.phase = "done"
            run = self._ctx.running.get(session_id)
            if proposing and run is not None and run.run_id == rnd.run_id:
                run.abort("confirmed")
        await self._emit(new_event(DirectionConfirmed, session_id, direction_spec=cmd.spec, version=version))
        self._log(logging.INFO, "Direction confirmed", log_ctx, version=version)

    # ---- proposal run --------------------------------------------

    def _start(self, session_id: str, rnd: DirectionRound, log_ctx: Dict[str, Any]) -> None:
        run_id = new_id()
        rnd.phase = "proposing"
        rnd.run_id = run_id
        rnd.last_proposal = ""
        prompt = build_direction_prompt(rnd.user_query, rnd.version, rnd.feedback)
        handle = self._executor.start(
            [prompt],
            self._callbacks(session_id, run_id, rnd.version),
            run_id=run_id,
            temperature=PROPOSAL_TEMPERATURE,
        )
        self._ctx.running[session_id] = handle
        self._log(logging.INFO, "Direction proposal started", log_ctx, run_id=run_id, version=rnd.version)

    def _active_round(self, session_id: str, run_id: str) -> Optional[DirectionRound]:
        """本次运行仍是该会话当前的提案时返回轮次，否则返回 None。"""

        rnd = self._ctx.direction_rounds.get(session_id)
        if rnd is None or rnd.run_id != run_id or rnd.phase != "proposing":
            return None
        return rnd

    def _callbacks(self, session_id: str, run_id: str, version: int) -> RunCallbacks:
        chunks: List[str] = []

        def release() -> None:
            run = self._ctx.running.get(session_id)
            if run is not None and run.run_id == run_id:
                del self._ctx.running[session_id]

        async def on_start() -> None:
            await self._emit(new_event(DirectionProposalStarted, session_id, run_id=run_id, version=version))

        async def on_delta(delta: str) -> None:
            chunks.append(delta)
            await self._emit(new_event(
                DirectionProposalDelta, session_id, run_id=run_id, version=version, delta=delta
            ))

        async def on_done() -> None:
            release()
            text = "".join(chunks)
            rnd = self._active_round(session_id, run_id)
            if not has_direction_marker(text):
                if rnd is not None:
                    rnd.phase = "idle"
                await self._emit(new_event(
                    DirectionClarificationRequested,
                    session_id,
                    run_id=run_id,
                    version=version,
                    question=text.strip() or CLARIFY_FALLBACK,
                ))
                return
            if rnd is not None:
                rnd.phase = "awaiting"
                rnd.last_proposal = text
            await self._emit(new_event(
                DirectionProposed, session_id, run_id=run_id, version=version, proposal_text=text
            ))
            if rnd is not None:
                await self._emit(new_event(DecisionRequested, session_id, run_id=run_id, version=version))

        async def on_abort(reason: Optional[str]) -> None:
            release()
            rnd = self._active_round(session_id, run_id)
            if rnd is not None:
                rnd.phase = "idle"
            await self._emit(new_event(
                DirectionProposalAborted, session_id, run_id=run_id, version=version, reason=reason
            ))

        async def on_error(message: str) -> None:
            release()
            rnd = self._active_round(session_id, run_id)
            if rnd is not None:
                rnd.phase = "idle"
            await self._emit(new_event(
                DirectionProposalFailed, session_id, run_id=run_id, version=version, error=message
            ))

        return RunCallbacks(on_start=on_start, on_delta=on_delta, on_done=on_done, on_abort=on_abort, on_error=on_error)

    def _log(self, level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = {"runtime": self._ctx.context_id}
        payload.update(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


class DirectionSupervisor:
    def __init__(self, event_bus: EventBus, command_bus: CommandBus, projection: Projection):
        self._event_bus = event_bus
        self._command_bus = command_bus
        self._projection = projection
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
        if isinstance(e, UserMessageAdded):
            query: Optional[str] = e.text
        elif isinstance(e, DeepResearchModeChanged) and e.enabled:
            query = None
        else:
            return
        # publish 时事件尚未投影，判断放到后台任务里进行
        task = asyncio.get_running_loop().create_task(self._maybe_propose(e.session_id, query))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _maybe_propose(self, session_id: str, query: Optional[str]) -> None:
        session = self._projection.get_session(session_id)
        if session is None or not session.deep_research_enabled:
            return
        if session.direction.confirmed or session.direction.awaiting_decision:
            return
        if query is None:
            # 开启深度研究时用最近一条用户消息发起提案
            last_user = next((m for m in reversed(session.messages) if m.role == "user"), None)
            query = last_user.content if last_user else ""
        if not query.strip():
            return
        try:
            await self._command_bus.dispatch(new_command(ProposeDirection, session_id, user_query=query))
        except Exception as exc:  # noqa: BLE001 - 后台任务，失败只记录
            logger.warning(
                "Direction proposal dispatch failed",
                extra={"extra": {"session_id": session_id, "error": str(exc)}},
            )
