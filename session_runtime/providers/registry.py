"""Provider 与模型配置。

本模块将“用途（purpose）”与“具体厂商模型名”解耦：

- purpose：代码里使用的统一名称。"thinking" 用于助手回复，"task" 用于
  标题生成这类短小、确定性的任务。
- provider_model：厂商实际提供的模型 ID。

配置里的 thinking_model / task_model 优先于这里的默认值。"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass
class ModelConfig:
    """单个用途的模型配置。"""

    purpose: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]


OPENAI_COMPATIBLE_CONFIG = ProviderConfig(
    name="openai-compatible",
    base_url="https://api.openai.com/v1",
    models={
        "thinking": ModelConfig(
            purpose="thinking",
            provider_model="gpt-4o",
            max_tokens=4096,
            default_temperature=0.6,
        ),
        "task": ModelConfig(
            purpose="task",
            provider_model="gpt-4o-mini",
            max_tokens=256,
            default_temperature=0.2,
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai-compatible": OPENAI_COMPATIBLE_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写，忽略 - 与 _。"""

    key = name.lower().replace("-", "").replace("_", "")
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.replace("-", "") == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def resolve_model_for_purpose(purpose: str, cfg, provider: Optional[str] = None) -> str:
    """返回某用途应使用的厂商模型名。"""

    override = getattr(cfg, f"{purpose}_model", None)
    if override:
        return override
    provider_cfg = get_provider_config(provider or getattr(cfg, "default_provider", "openai-compatible"))
    model_cfg = provider_cfg.models.get(purpose) or provider_cfg.models["thinking"]
    return model_cfg.provider_model


def find_model_config(provider_model: str, provider: str = "openai-compatible") -> Optional[ModelConfig]:
    for model_cfg in get_provider_config(provider).models.values():
        if model_cfg.provider_model == provider_model:
            return model_cfg
    return None
