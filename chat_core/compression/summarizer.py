"""增量上下文压缩。

每条消息有三种状态（在组装请求或显式请求摘要时惰性判断）：

- RAW: 没有摘要，且不满足压缩条件；
- PENDING: 会话启用了 incremental 摘要且内容长度 >= 阈值，但还没有摘要；
- SUMMARIZED: 已有摘要并置位 use_summary。

summarize() 发起一次非流式子请求生成摘要，成功后写回消息；
失败或结果为空时消息保持不变（压缩是尽力而为的，从不阻塞主对话）。
"""

from dataclasses import replace
from enum import Enum
from typing import List, Optional, Set, Tuple

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, Message, ModelConfig, SummaryLevel
from chat_core.domain.exceptions import BusinessError, SummarizationError
from chat_core.domain.models import SummaryResponse
from chat_core.infrastructure.logging.logger import logger
from chat_core.prompts import load_prompt
from chat_core.providers.assembler import get_message_or_summary, render_content
from chat_core.providers.base import ChatTransport
from chat_core.providers.registry import resolve_model_config


class SummaryState(str, Enum):
    RAW = "raw"
    PENDING = "summarizable_pending"
    SUMMARIZED = "summarized"


def is_compressible(message: Message, model_cfg: ModelConfig) -> bool:
    if model_cfg.summary_level != SummaryLevel.INCREMENTAL:
        return False
    threshold = model_cfg.compress_message_length_threshold or 0
    return len(message.content or "") >= threshold


def summary_state(message: Message, model_cfg: ModelConfig) -> SummaryState:
    if message.summary and message.use_summary:
        return SummaryState.SUMMARIZED
    if is_compressible(message, model_cfg):
        return SummaryState.PENDING
    return SummaryState.RAW


def build_summary_messages(conversation: Conversation, message: Message) -> Optional[List[Message]]:
    """根据会话快照构造摘要子请求的消息列表，不修改任何输入。

    顺序：会话的持久 system 消息 -> 目标消息及之前的所有非 hidden 消息 -> 摘要指令。
    之前的消息若已有摘要则以摘要（带前缀标记）出现；目标消息本身总是使用原文。
    消息不属于该会话时返回 None。
    """

    index = conversation.index_of(message)
    if index == -1:
        return None

    msgs: List[Message] = [
        replace(m, summary=None, use_summary=False) for m in conversation.system_context()
    ]
    for prior in conversation.messages[:index]:
        if prior.hidden:
            continue
        snapshot, in_summary = get_message_or_summary(prior, check_flag=False)
        msgs.append(replace(snapshot, content=render_content(snapshot, in_summary)))
    msgs.append(replace(message, summary=None, use_summary=False, hidden=False))
    msgs.append(
        Message(
            id=conversation.next_message_id(),
            role="system",
            content=load_prompt("summarize_incremental"),
        )
    )
    return msgs


class IncrementalSummarizer:
    """上下文压缩引擎。"""

    def __init__(self, client: ChatTransport, cfg=settings):
        self._client = client
        self._settings = cfg
        self._in_flight: Set[Tuple[str, int]] = set()

    def model_config(self, conversation: Conversation) -> ModelConfig:
        return resolve_model_config(self._settings, conversation)

    def state(self, message: Message, conversation: Conversation) -> SummaryState:
        return summary_state(message, self.model_config(conversation))

    def should_summarize(self, message: Message, conversation: Conversation) -> bool:
        return is_compressible(message, self.model_config(conversation))

    async def request_summary(self, message: Message, conversation: Conversation) -> SummaryResponse:
        """发起摘要子请求；失败时抛出 SummarizationError。"""

        msgs = build_summary_messages(conversation, message)
        if msgs is None:
            raise SummarizationError(code="SUMMARIZATION_FAILED", message="message not in conversation")
        try:
            res = await self._client.request_chat(
                msgs,
                conversation,
                model=self._settings.summary_model,
                temperature=self._settings.summary_temperature,
                presence_penalty=self._settings.summary_presence_penalty,
            )
        except BusinessError as e:
            raise SummarizationError(code="SUMMARIZATION_FAILED", message=e.message) from e
        summary = (res.content or "").strip() if res is not None else ""
        if not summary:
            raise SummarizationError(code="SUMMARIZATION_FAILED", message="empty summary")
        return SummaryResponse(
            message_id=message.id,
            summary=summary,
            completion_tokens=res.usage.completion_tokens if res.usage else None,
        )

    async def summarize(self, message: Message, conversation: Conversation) -> Message:
        """尽力为消息生成摘要并写回；不满足条件或失败时原样返回。"""

        if not self.should_summarize(message, conversation):
            return message
        key = (conversation.id, message.id)
        if key in self._in_flight:
            logger.info("Summary already in progress", extra={"extra": {"message_id": message.id}})
            return message

        self._in_flight.add(key)
        try:
            response = await self.request_summary(message, conversation)
        except SummarizationError as e:
            logger.warning(
                "Incremental summary skipped",
                extra={"extra": {"conversation_id": conversation.id, "message_id": message.id, "error": e.message}},
            )
            return message
        finally:
            self._in_flight.discard(key)

        apply_summary(message, response)
        logger.info(
            "Stored incremental summary",
            extra={
                "extra": {
                    "conversation_id": conversation.id,
                    "message_id": message.id,
                    "chars": len(message.content),
                    "summary_chars": len(response.summary),
                    "summary_tokens": response.completion_tokens,
                }
            },
        )
        return message


def apply_summary(message: Message, response: SummaryResponse) -> None:
    message.summary = response.summary
    message.use_summary = True
    message.n_summary_tokens = response.completion_tokens
