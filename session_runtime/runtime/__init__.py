"""会话运行时：命令总线、事件总线、投影、执行器与编排器。"""

from .bootstrap import SessionRuntime, ensure_runtime, reset_runtime

__all__ = ["SessionRuntime", "ensure_runtime", "reset_runtime"]
