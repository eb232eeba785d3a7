"""模型参数分层。

一次请求的实际参数由三层叠加得到（低 -> 高）：

1. 全局默认值：来自 Settings（default_model / default_temperature ...）。
2. 会话级配置：Conversation.model_config 中非 None 的字段。
3. 调用时显式覆盖：override_model / override_temperature / override_presence_penalty，
   只有显式传入（非 None）时才生效。
"""

from typing import Optional

from chat_core.domain.conversation import Conversation, ModelConfig, SummaryLevel
from chat_core.domain.exceptions import ValidationError


def _check_number(name: str, value) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(code="VALIDATION_ERROR", message=f"{name} must be a number, got {value!r}")


def global_model_config(cfg) -> ModelConfig:
    """根据 Settings 构造全局默认的 ModelConfig（所有字段均已填充）。"""

    return ModelConfig(
        model=getattr(cfg, "default_model", "gpt-3.5-turbo"),
        temperature=getattr(cfg, "default_temperature", 1.0),
        presence_penalty=getattr(cfg, "default_presence_penalty", 0.0),
        summary_level=SummaryLevel(getattr(cfg, "default_summary_level", SummaryLevel.INCREMENTAL)),
        compress_message_length_threshold=getattr(cfg, "default_compress_threshold", 1000),
    )


def resolve_model_config(
    cfg,
    conversation: Optional[Conversation] = None,
    *,
    override_model: Optional[str] = None,
    override_temperature: Optional[float] = None,
    override_presence_penalty: Optional[float] = None,
) -> ModelConfig:
    _check_number("temperature", override_temperature)
    _check_number("presence_penalty", override_presence_penalty)
    resolved = global_model_config(cfg)
    if conversation is not None:
        resolved = resolved.overlay(conversation.model_config)
    return resolved.overlay(
        ModelConfig(
            model=override_model or None,
            temperature=override_temperature,
            presence_penalty=override_presence_penalty,
        )
    )
