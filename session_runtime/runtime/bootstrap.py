"""组合根：组装并缓存进程唯一的会话运行时。

ensure_runtime() 是幂等的：第一次调用时创建 RuntimeContext、总线、投影、
执行器与编排器并注册命令处理函数；之后（包括 importlib.reload 本模块之后）
的调用都返回同一个 SessionRuntime，不会出现第二套协调状态。
"""

from dataclasses import dataclass
from typing import Optional

from session_runtime.config.settings import settings
from session_runtime.domain.session import MessageStore
from session_runtime.infrastructure.logging.logger import logger
from session_runtime.infrastructure.storage.memory_store import ProjectionMessageStore
from session_runtime.prompts import ContextBuilder
from session_runtime.providers.base import StreamingTextSource
from session_runtime.runtime.command_bus import CommandBus
from session_runtime.runtime.context import RuntimeContext
from session_runtime.runtime.direction import DirectionSupervisor
from session_runtime.runtime.event_bus import EventBus
from session_runtime.runtime.executor import StreamingExecutor
from session_runtime.runtime.orchestrator import Orchestrator
from session_runtime.runtime.projector import Projection
from session_runtime.runtime.title_supervisor import TitleSupervisor


@dataclass
class SessionRuntime:
    context: RuntimeContext
    command_bus: CommandBus
    event_bus: EventBus
    projection: Projection
    orchestrator: Orchestrator
    direction_supervisor: DirectionSupervisor
    title_supervisor: Optional[TitleSupervisor] = None

    async def wait_idle(self) -> None:
        """等待所有运行与后台监督任务结束。"""

        # 监督任务会派发新命令（提案、改名），提案又会启动新的运行，直到两边都空闲
        while True:
            await self.orchestrator.wait_idle()
            supervisors = [s for s in (self.direction_supervisor, self.title_supervisor) if s is not None]
            for supervisor in supervisors:
                await supervisor.wait_idle()
            if self.orchestrator.idle and not any(s.busy for s in supervisors):
                return


# 重新加载模块时沿用已有实例
_runtime: Optional[SessionRuntime] = globals().get("_runtime")


def ensure_runtime(
    text_source: Optional[StreamingTextSource] = None,
    message_store: Optional[MessageStore] = None,
    cfg=None,
) -> SessionRuntime:
    """返回进程唯一的 SessionRuntime，不存在时创建。

    参数只在首次创建时生效；之后的调用直接复用已有实例。
    """

    global _runtime
    if _runtime is not None:
        logger.debug("Reusing session runtime", extra={"extra": {"runtime": _runtime.context.context_id}})
        return _runtime

    cfg = cfg or settings
    if text_source is None:
        from session_runtime.providers import create_text_source

        text_source = create_text_source()

    ctx = RuntimeContext()
    command_bus = CommandBus(bus_id=f"cmdbus:{ctx.context_id}")
    event_bus = EventBus(bus_id=f"evbus:{ctx.context_id}")
    projection = Projection()
    store = message_store or ProjectionMessageStore(projection)
    orchestrator = Orchestrator(
        ctx,
        command_bus,
        event_bus,
        projection,
        StreamingExecutor(text_source, cfg),
        ContextBuilder(store, projection),
        cfg,
    )
    orchestrator.register()

    direction_supervisor = DirectionSupervisor(event_bus, command_bus, projection)
    direction_supervisor.start()

    title_supervisor = None
    if cfg.title_generation_enabled:
        title_supervisor = TitleSupervisor(event_bus, command_bus, projection, text_source, cfg)
        title_supervisor.start()

    _runtime = SessionRuntime(
        context=ctx,
        command_bus=command_bus,
        event_bus=event_bus,
        projection=projection,
        orchestrator=orchestrator,
        direction_supervisor=direction_supervisor,
        title_supervisor=title_supervisor,
    )
    logger.info(
        "Session runtime initialized",
        extra={"extra": {"runtime": ctx.context_id, "provider": getattr(text_source, "name", "unknown")}},
    )
    return _runtime


async def reset_runtime() -> None:
    """丢弃缓存的运行时（仅测试使用）。

    先中止仍在运行的生成并等待它们的终止事件发出，再清空缓存，
    避免旧运行时的任务在下一个运行时里继续写事件。
    """

    global _runtime
    runtime, _runtime = _runtime, None
    if runtime is None:
        return
    for run in list(runtime.context.running.values()):
        run.abort("reset")
    await runtime.wait_idle()
