"""对外 API 服务模块。

ChatService 是会话管理者持有的门面：拥有唯一的 ControllerPool，
把一次用户输入变成“流式回复 + 句柄登记 + token 统计 + 增量摘要”的完整流程。
"""

import asyncio
from typing import Callable, List, Optional, Set

from chat_core.compression.summarizer import IncrementalSummarizer
from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, Message
from chat_core.domain.exceptions import BusinessError, UnauthorizedError
from chat_core.domain.models import UsageReport
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.cancellation import CancellationHandle, ControllerPool
from chat_core.providers.openai_client import OpenAIClient
from chat_core.tokens.accountant import TokenAccountant


ERROR_PROMPT = "Request failed, please try again."
UNAUTHORIZED_PROMPT = "Unauthorized: please enter your API key or access code."


def _default_show_error(message: str) -> None:
    logger.error(message)


class ChatService:
    def __init__(
        self,
        cfg=settings,
        client: Optional[OpenAIClient] = None,
        pool: Optional[ControllerPool] = None,
        accountant: Optional[TokenAccountant] = None,
        summarizer: Optional[IncrementalSummarizer] = None,
        show_error: Optional[Callable[[str], None]] = None,
    ):
        self._settings = cfg
        self.show_error = show_error or _default_show_error
        self.accountant = accountant or TokenAccountant.from_settings(cfg)
        self.client = client or OpenAIClient(cfg, token_counter=self.accountant, show_error=self.show_error)
        self.pool = pool or ControllerPool()
        self.summarizer = summarizer or IncrementalSummarizer(self.client, cfg)
        self._post_tasks: Set["asyncio.Future[None]"] = set()

    def context_messages(self, conversation: Conversation, exclude: Optional[Message] = None) -> List[Message]:
        """preamble + 所有非 hidden 的历史消息。"""

        history = [m for m in conversation.messages if not m.hidden and m is not exclude]
        return list(conversation.context) + history

    async def send_message(self, session_index: int, conversation: Conversation, content: str) -> Message:
        """发送一条用户消息并流式接收回复，返回助手消息（出错时 is_error=True）。

        Args:
            session_index: 会话在上层列表中的位置，用作取消句柄 key 的一部分。
            conversation: 当前会话，消息会被原地追加和更新。
            content: 用户输入。
        """

        user_message = Message(id=conversation.next_message_id(), role="user", content=content)
        conversation.messages.append(user_message)
        bot_message = Message(
            id=conversation.next_message_id(),
            role="assistant",
            content="",
            streaming=True,
        )
        send_messages = self.context_messages(conversation)
        conversation.messages.append(bot_message)
        log_ctx = {
            "session_index": session_index,
            "conversation_id": conversation.id,
            "message_id": bot_message.id,
        }
        outcome = {"done": False}

        def on_controller(handle: CancellationHandle) -> None:
            self.pool.add(session_index, bot_message.id, handle)

        def on_message(text: str, done: bool, prompt_tokens: Optional[int] = None, completion_tokens: Optional[int] = None) -> None:
            bot_message.content = text
            if not done:
                return
            bot_message.streaming = False
            bot_message.n_tokens = completion_tokens
            outcome["done"] = True
            self.pool.remove(session_index, bot_message.id)
            logger.info(
                "Chat reply finished",
                extra={"extra": {**log_ctx, "prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens}},
            )

        def on_error(error: BusinessError, status_code: Optional[int] = None) -> None:
            bot_message.content += f"\n\n{ERROR_PROMPT}"
            bot_message.streaming = False
            bot_message.is_error = True
            self.pool.remove(session_index, bot_message.id)
            logger.warning(
                "Chat stream failed",
                extra={"extra": {**log_ctx, "code": error.code, "status": status_code}},
            )
            if isinstance(error, UnauthorizedError):
                self.show_error(UNAUTHORIZED_PROMPT)

        await self.client.request_chat_stream(
            send_messages,
            conversation,
            on_message=on_message,
            on_error=on_error,
            on_controller=on_controller,
        )

        if outcome["done"]:
            task = asyncio.ensure_future(self._after_reply(conversation, user_message, bot_message))
            self._post_tasks.add(task)
            task.add_done_callback(self._on_post_done)
        return bot_message

    def _on_post_done(self, task: "asyncio.Future[None]") -> None:
        self._post_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Post-reply processing failed", extra={"extra": {"error": repr(error)}})

    async def drain(self) -> None:
        """等待 send_message 留下的 token 统计与摘要任务全部结束。"""

        while self._post_tasks:
            await asyncio.gather(*list(self._post_tasks), return_exceptions=True)

    async def _after_reply(self, conversation: Conversation, user_message: Message, bot_message: Message) -> None:
        # 本地分词器不可用时才走远端估算（需在配置中开启）
        for message in (user_message, bot_message):
            if message.n_tokens is None:
                await self.accountant.annotate_token_count(message, self.client, conversation)
        for message in (user_message, bot_message):
            await self.summarizer.summarize(message, conversation)

    def stop(self, session_index: int, message_id: int) -> None:
        self.pool.stop(session_index, message_id)

    def stop_all(self) -> None:
        self.pool.stop_all()

    def has_pending(self) -> bool:
        return self.pool.has_pending()

    async def usage(self) -> Optional[UsageReport]:
        return await self.client.request_usage()


_service: Optional[ChatService] = None


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例）。"""
    global _service
    if _service is None:
        _service = ChatService(settings)
    return _service
