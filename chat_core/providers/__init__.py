"""LLM Provider 集成层。

该包下的模块负责：
- 定义调用协议 (base) 与凭证解析 (credentials)。
- 模型参数分层 (registry) 与请求组装 (assembler)。
- 取消句柄与句柄池 (cancellation)。
- OpenAI 兼容接口的具体实现 (openai_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ChatTransport, TokenCounter
from chat_core.providers.cancellation import CancellationHandle, ControllerPool
from chat_core.providers.openai_client import ChatStream, OpenAIClient, ShowError


def create_client(
    token_counter: Optional[TokenCounter] = None,
    show_error: Optional[ShowError] = None,
) -> OpenAIClient:
    """根据全局配置创建客户端实例。"""

    return OpenAIClient(settings, token_counter=token_counter, show_error=show_error)


__all__ = [
    "CancellationHandle",
    "ChatStream",
    "ChatTransport",
    "ControllerPool",
    "OpenAIClient",
    "TokenCounter",
    "create_client",
]
