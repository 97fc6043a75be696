"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("SESSION_RUNTIME_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """会话运行时配置。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai-compatible",
        description="默认使用的流式文本 Provider 名称",
    )
    llm_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容接口的基础 URL（也可以直接写到 /chat/completions）",
    )
    llm_api_key: Optional[str] = Field(default=None, description="LLM API 密钥")
    thinking_model: Optional[str] = Field(
        default=None,
        description="覆盖 thinking 用途的厂商模型名，为空时使用 registry 默认值",
    )
    task_model: Optional[str] = Field(
        default=None,
        description="覆盖 task 用途（标题生成等）的厂商模型名",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 助手流式生成 ----
    assistant_temperature: float = Field(default=0.6, ge=0.0, le=2.0, description="助手回复温度")
    stream_batching_interval_ms: int = Field(
        default=80,
        ge=0,
        description="流式增量合并发送的时间窗口（毫秒），0 表示逐 token 发送",
    )
    context_window_size: int = Field(default=6, ge=1, le=50, description="构造上下文时保留的最近消息数")

    # ---- 标题生成 ----
    title_generation_enabled: bool = Field(default=True, description="首条用户消息后是否自动生成会话标题")
    title_locale: str = Field(default="zh-CN", description="标题生成语言")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("llm_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
