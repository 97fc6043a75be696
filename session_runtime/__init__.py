"""Session Runtime 顶层包。

该包实现文献研究应用的会话运行时：命令总线与事件总线、
读模型投影、可取消的流式助手生成、标题生成，
以及配置加载、日志与 Provider 适配等基础能力。
"""

from session_runtime.runtime import SessionRuntime, ensure_runtime, reset_runtime

__all__ = ["SessionRuntime", "ensure_runtime", "reset_runtime"]
