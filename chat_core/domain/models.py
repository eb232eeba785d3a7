"""统一的请求与结果数据模型。

本模块定义了在组装器、传输层、压缩引擎之间共享的标准数据结构：

- ChatMessage: 发给远端的一条 {role, content} 消息。
- ChatRequest: 组装完成、可直接序列化的请求体。
- ChatResult: 非流式响应解析后的统一结果。
- StreamEvent: 流式响应中的一次进度/结束事件。

所有 HTTP 相关代码都只依赖这些模型，并负责在 JSON 和模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# LLM 消息角色类型（与 OpenAI 的 role 字段对应）
Role = Literal["system", "user", "assistant"]


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@dataclass
class ChatMessage:
    """发给 Provider 的一条消息，只保留 role 与 content。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """一次完整的 chat/completions 请求体。"""

    messages: List[ChatMessage]
    stream: bool
    model: str
    temperature: float
    presence_penalty: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_payload() for m in self.messages],
            "stream": self.stream,
            "model": self.model,
            "temperature": self.temperature,
            "presence_penalty": self.presence_penalty,
        }


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息。"""

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass
class ChatChoice:
    """单个候选回答（通常只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """非流式调用的结果。

    - choices: 一个或多个候选回答。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def content(self) -> Optional[str]:
        """第一个候选回答的文本，没有候选时为 None。"""

        if not self.choices:
            return None
        return self.choices[0].message.content

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ChatResult":
        """解析响应 JSON；形状不符的 choice 直接跳过，不抛异常。"""

        choices: List[ChatChoice] = []
        raw_choices = data.get("choices")
        if not isinstance(raw_choices, list):
            raw_choices = []
        for i, ch in enumerate(raw_choices):
            if not isinstance(ch, dict):
                continue
            msg = ch.get("message")
            if not isinstance(msg, dict):
                msg = {}
            content = msg.get("content")
            choices.append(
                ChatChoice(
                    index=ch.get("index", i),
                    message=ChatMessage(
                        role=msg.get("role") or "assistant",
                        content=content if isinstance(content, str) else "",
                    ),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        usage = None
        usage_raw = data.get("usage")
        if isinstance(usage_raw, dict):
            usage = ChatUsage(
                prompt_tokens=_as_int(usage_raw.get("prompt_tokens")),
                completion_tokens=_as_int(usage_raw.get("completion_tokens")),
                total_tokens=_as_int(usage_raw.get("total_tokens")),
            )
        return cls(choices=choices, usage=usage, raw=data)


@dataclass
class StreamEvent:
    """流式对话的一次回调。

    text 始终是截至目前的累计文本；done=True 的事件每个流只出现一次且位于最后。
    """

    text: str
    done: bool
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


@dataclass
class TokenCounts:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


@dataclass
class SummaryResponse:
    """摘要子请求的临时结果，生成后立即写回目标消息。"""

    message_id: int
    summary: str
    completion_tokens: Optional[int] = None


@dataclass
class UsageReport:
    """账单接口的展示数据（美元）。"""

    used: Optional[float] = None
    subscription: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)
