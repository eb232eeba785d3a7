from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .models import Role


class SummaryLevel(str, Enum):
    NONE = "none"
    INCREMENTAL = "incremental"


@dataclass
class ModelConfig:
    """模型参数。全局默认值全部填充；会话级配置中 None 表示沿用下层的值。"""

    model: Optional[str] = None
    temperature: Optional[float] = None
    presence_penalty: Optional[float] = None
    summary_level: Optional[SummaryLevel] = None
    compress_message_length_threshold: Optional[int] = None

    def overlay(self, other: Optional["ModelConfig"]) -> "ModelConfig":
        """返回用 other 中非 None 字段覆盖后的新配置。"""

        if other is None:
            return replace(self)
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name) is not None
        }
        return replace(self, **updates)


@dataclass
class Message:
    """一轮对话消息。

    - id: 会话内唯一，也是取消句柄 key 的一部分。
    - summary / use_summary: 已生成的摘要，以及组装请求时是否用摘要替换原文。
    - n_tokens: prompt 侧 token 估算；n_summary_tokens: 生成摘要消耗的 completion token。
    - hidden: 为 True 时不参与上下文组装。
    """

    id: int
    role: Role
    content: str
    date: datetime = field(default_factory=datetime.now)
    summary: Optional[str] = None
    use_summary: bool = False
    n_tokens: Optional[int] = None
    n_summary_tokens: Optional[int] = None
    hidden: bool = False
    streaming: bool = False
    is_error: bool = False


@dataclass
class Conversation:
    """外部拥有的会话实体，这里只在组装/流式期间临时引用。

    context 是每次请求都会前置的持久消息（preamble）。
    """

    id: str
    messages: List[Message] = field(default_factory=list)
    context: List[Message] = field(default_factory=list)
    model_config: ModelConfig = field(default_factory=ModelConfig)
    topic: str = ""

    def system_context(self) -> List[Message]:
        return [m for m in self.context if m.role == "system"]

    def index_of(self, message: Message) -> int:
        for i, m in enumerate(self.messages):
            if m is message or m.id == message.id:
                return i
        return -1

    def next_message_id(self) -> int:
        ids = [m.id for m in self.messages] + [m.id for m in self.context]
        return max(ids, default=0) + 1
