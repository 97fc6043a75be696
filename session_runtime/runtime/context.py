from dataclasses import dataclass, field
from typing import Dict, Literal, Optional, Set
from uuid import uuid4

from session_runtime.runtime.executor import RunHandle

DirectionPhase = Literal["idle", "proposing", "awaiting", "done"]


@dataclass
class DirectionRound:
    """一个会话的方向提案轮次：idle -> proposing -> awaiting -> done。

    refine 让版本号加一并回到 proposing；cancel、提案失败或中止回到 idle。
    """

    phase: DirectionPhase = "idle"
    user_query: str = ""
    version: int = 0
    feedback: Optional[str] = None
    last_proposal: str = ""
    run_id: Optional[str] = None


@dataclass
class RuntimeContext:
    """进程级协调状态。

    - running: 每个会话当前存活的运行（至多一个，助手回复与方向提案共用）。
    - handled_command_ids: 已处理的命令 id，只增不减，用于重复抑制。
    - direction_rounds: 每个会话的方向提案轮次。
    - orchestrator_registered: Orchestrator 向命令总线注册的一次性标记。

    只应由 bootstrap.ensure_runtime 创建一次；模块重新加载后复用同一实例，
    否则旧的运行会从 running 表里“消失”，导致同一会话出现第二个运行。
    """

    context_id: str = field(default_factory=lambda: f"runtime:{uuid4().hex[:6]}")
    running: Dict[str, RunHandle] = field(default_factory=dict)
    handled_command_ids: Set[str] = field(default_factory=set)
    direction_rounds: Dict[str, DirectionRound] = field(default_factory=dict)
    orchestrator_registered: bool = False
