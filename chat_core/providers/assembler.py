"""请求组装器。

把 Message 列表 + 覆盖参数转换为可直接发送的 ChatRequest：

1. 过滤 hidden 消息；
2. 会话摘要级别为 incremental 时，对每条消息决定发原文还是摘要
   （摘要会加上 INCREMENTAL_SUMMARY_PREFIX 标记）；
3. 在列表前注入固定的说明/人设 system 消息；
4. 按“全局默认 < 会话配置 < 显式覆盖”解析模型参数。

本模块不做任何 I/O。
"""

from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, Message, SummaryLevel
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.prompts import INCREMENTAL_SUMMARY_PREFIX, load_prompt
from chat_core.providers.registry import resolve_model_config


def is_message_in_summary_mode(message: Message, check_flag: bool = False) -> bool:
    """消息是否应以摘要形式发出。

    摘要为空时永远返回 False；check_flag=True 时还要求 use_summary 被置位。
    """

    if not message.summary:
        return False
    return not check_flag or message.use_summary


def get_message_or_summary(message: Message, check_flag: bool = False) -> Tuple[Message, bool]:
    """返回 (用于发送的消息快照, 是否处于摘要模式)。

    快照不携带 summary 字段，避免被再次替换。
    """

    in_summary = is_message_in_summary_mode(message, check_flag)
    content = (message.summary if in_summary else message.content) or ""
    snapshot = replace(message, content=content, summary=None, use_summary=False)
    return snapshot, in_summary


def render_content(message: Message, in_summary: bool) -> str:
    if in_summary:
        return f"{INCREMENTAL_SUMMARY_PREFIX} {message.content}"
    return message.content


class RequestAssembler:
    """Message 列表 -> ChatRequest。"""

    def __init__(self, cfg=settings):
        self._settings = cfg

    def preamble(self) -> List[ChatMessage]:
        """配置期常量：可选人设 + 摘要标记说明。"""

        msgs: List[ChatMessage] = []
        persona = getattr(self._settings, "persona_prompt", None)
        if persona:
            msgs.append(ChatMessage(role="system", content=persona))
        if getattr(self._settings, "inject_summary_intro", True):
            msgs.append(
                ChatMessage(
                    role="system",
                    content=load_prompt("summary_intro", prefix=INCREMENTAL_SUMMARY_PREFIX),
                )
            )
        return msgs

    def to_wire_messages(
        self,
        messages: Sequence[Message],
        *,
        summaries_enabled: bool,
    ) -> List[ChatMessage]:
        check_flag = getattr(self._settings, "summary_check_flag", True)
        wire: List[ChatMessage] = []
        for message in messages:
            if message.hidden:
                continue
            if summaries_enabled:
                snapshot, in_summary = get_message_or_summary(message, check_flag)
            else:
                snapshot, in_summary = message, False
            wire.append(ChatMessage(role=snapshot.role, content=render_content(snapshot, in_summary)))
        return wire

    def build(
        self,
        messages: Sequence[Message],
        conversation: Optional[Conversation] = None,
        *,
        stream: bool = False,
        override_model: Optional[str] = None,
        override_temperature: Optional[float] = None,
        override_presence_penalty: Optional[float] = None,
    ) -> ChatRequest:
        model_cfg = resolve_model_config(
            self._settings,
            conversation,
            override_model=override_model,
            override_temperature=override_temperature,
            override_presence_penalty=override_presence_penalty,
        )
        wire = self.to_wire_messages(
            messages,
            summaries_enabled=model_cfg.summary_level == SummaryLevel.INCREMENTAL,
        )
        return ChatRequest(
            messages=self.preamble() + wire,
            stream=stream,
            model=model_cfg.model,
            temperature=model_cfg.temperature,
            presence_penalty=model_cfg.presence_penalty,
        )
