"""Chat Core 顶层包。

该包提供流式 Chat Completions 客户端的核心实现，
包括配置加载、领域模型、请求组装、取消句柄池、流式传输、
增量上下文压缩与 token 统计等能力。
"""

from chat_core.api.service import ChatService, get_default_service
from chat_core.domain.conversation import Conversation, Message, ModelConfig, SummaryLevel

__all__ = ["ChatService", "Conversation", "Message", "ModelConfig", "SummaryLevel", "get_default_service"]
