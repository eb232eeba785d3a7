"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级（高 -> 低）：构造参数 > 环境变量 > .env > config.yaml > secrets 文件。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
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
    """配置设置（使用 Pydantic）。"""

    # ---- 端点与凭证 ----
    openai_url: str = Field(
        default="https://api.openai.com/",
        description="Chat Completions 服务的基础 URL",
    )
    chat_path: str = Field(default="v1/chat/completions", description="对话接口路径")
    usage_path: str = Field(default="dashboard/billing/usage", description="用量查询接口路径")
    subscription_path: str = Field(
        default="dashboard/billing/subscription",
        description="额度查询接口路径",
    )
    api_key: Optional[str] = Field(default=None, description="用户自己的 API 密钥（优先使用）")
    access_code: Optional[str] = Field(default=None, description="访问码，开启访问控制时使用")
    enable_access_control: bool = Field(default=False, description="是否启用访问码鉴权")
    access_code_prefix: str = Field(default="ak-", description="访问码换算为 Bearer 凭证时的前缀")

    # ---- 超时 ----
    request_timeout: float = Field(
        default=60.0,
        ge=0.01,
        description="等待响应头的整体超时（秒）",
    )
    stream_idle_timeout: float = Field(
        default=60.0,
        ge=0.01,
        description="两个流式分片之间的最长空闲时间（秒）",
    )
    stream_format: Literal["text", "sse"] = Field(
        default="text",
        description="流式响应体格式：text 为纯文本增量，sse 为 data: 行",
    )

    # ---- 全局模型默认值 ----
    default_model: str = Field(default="gpt-3.5-turbo", description="默认模型")
    default_temperature: float = Field(default=1.0, ge=0.0, le=2.0)
    default_presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    default_summary_level: Literal["none", "incremental"] = Field(default="incremental")
    default_compress_threshold: int = Field(
        default=1000,
        ge=1,
        description="消息长度达到该字符数才会触发增量摘要",
    )

    # ---- 上下文压缩 ----
    summary_model: str = Field(default="gpt-4", description="生成摘要使用的模型")
    summary_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    summary_presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    summary_check_flag: bool = Field(
        default=True,
        description="组装请求时是否要求 use_summary 标记才替换为摘要",
    )
    inject_summary_intro: bool = Field(default=True, description="是否注入摘要前缀说明消息")
    persona_prompt: Optional[str] = Field(default=None, description="可选的人设 system 消息")

    # ---- Token 统计 ----
    tokenizer_encoding: str = Field(default="cl100k_base", description="tiktoken 编码名称")
    remote_token_estimate: bool = Field(
        default=False,
        description="本地分词器不可用时，是否请求远端模型估算 token（低置信度）",
    )
    token_estimate_model: str = Field(default="gpt-3.5-turbo")
    token_estimate_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    token_fallback_model: str = Field(default="gpt-4")
    token_fallback_temperature: float = Field(default=0.0, ge=0.0, le=2.0)

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

    @field_validator("api_key")
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
