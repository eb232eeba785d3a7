"""Provider 抽象接口。

压缩引擎与 token 统计不直接依赖具体的 HTTP 客户端，而是依赖这里的协议，
测试中可以用简单的 Fake 对象替换。
"""

from typing import Optional, Protocol, Sequence

from chat_core.domain.conversation import Conversation, Message
from chat_core.domain.models import ChatResult


class ChatTransport(Protocol):
    """非流式对话调用协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - request_chat(...): 执行一次非流式调用，响应无法解析时返回 None。
    """

    name: str

    async def request_chat(
        self,
        messages: Sequence[Message],
        conversation: Optional[Conversation] = None,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        presence_penalty: Optional[float] = None,
    ) -> Optional[ChatResult]:
        ...


class TokenCounter(Protocol):
    """本地 token 计数协议；没有可用分词器时返回 None。"""

    def count_text(self, text: str) -> Optional[int]:
        ...
