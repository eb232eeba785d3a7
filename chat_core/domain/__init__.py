"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResult / StreamEvent 模型。
- conversation: Message / Conversation / ModelConfig 等会话实体。
- exceptions: 业务异常类型定义。
"""
