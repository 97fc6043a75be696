"""LLM Provider 集成层。

该包下的模块负责：
- 定义流式文本源协议 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供具体实现 (openai_compatible)。
"""

from typing import Optional

from session_runtime.config.settings import settings
from session_runtime.providers.base import StreamingTextSource
from session_runtime.providers.openai_compatible import OpenAICompatibleSource
from session_runtime.providers.registry import get_provider_config


def create_text_source(name: Optional[str] = None) -> StreamingTextSource:
    """根据名称创建文本源实例，默认取配置中的 provider。"""

    provider_name = name or getattr(settings, "default_provider", "openai-compatible")
    # 未知名称直接报错，避免悄悄连到错误的服务
    get_provider_config(provider_name)
    return OpenAICompatibleSource(settings)
