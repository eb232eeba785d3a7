"""Token 统计。

两种估算方式：

- 本地分词器（主路径）：tiktoken 编码文本，纯同步、确定性。
- 远端估算（低置信度兜底）：没有本地分词器且开启 remote_token_estimate 时，
  让远端模型“数 token”。先用打乱词序的文本发一次请求，读取 usage.prompt_tokens；
  拿不到时换用“这个列表是否有序”的问法、换一个模型/温度，从回复里解析整数。
  两条路径都可能失败，失败时计数保持为空，不影响主流程。
"""

import random
import re
from typing import Any, Optional

import tiktoken

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, Message
from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.logging.logger import logger
from chat_core.prompts import load_prompt
from chat_core.providers.base import ChatTransport


_INT_PATTERN = re.compile(r"-?\d+")


def load_local_tokenizer(encoding_name: str) -> Optional[Any]:
    """加载 tiktoken 编码；编码文件无法获取（如离线）时返回 None。"""

    try:
        return tiktoken.get_encoding(encoding_name)
    except (ValueError, OSError) as e:
        logger.warning(
            "Local tokenizer unavailable, token counts fall back to remote estimation",
            extra={"extra": {"encoding": encoding_name, "error": str(e)}},
        )
        return None


def shuffle_words(text: str, rng: Optional[random.Random] = None) -> str:
    """按空格切词后原地洗牌（Fisher-Yates），再用空格拼回。"""

    rng = rng or random.Random()
    words = text.split(" ")
    for i in range(len(words) - 1, 0, -1):
        j = rng.randint(0, i)
        words[i], words[j] = words[j], words[i]
    return " ".join(words)


def parse_token_count(reply: Optional[str]) -> Optional[int]:
    if not reply:
        return None
    match = _INT_PATTERN.search(reply)
    if not match:
        return None
    value = int(match.group(0))
    return value if value >= 0 else None


class TokenAccountant:
    def __init__(self, tokenizer: Optional[Any] = None, cfg=settings, rng: Optional[random.Random] = None):
        self._tokenizer = tokenizer
        self._settings = cfg
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, cfg=settings) -> "TokenAccountant":
        return cls(load_local_tokenizer(cfg.tokenizer_encoding), cfg)

    @property
    def has_local_tokenizer(self) -> bool:
        return self._tokenizer is not None

    def count_text(self, text: str) -> Optional[int]:
        if self._tokenizer is None:
            return None
        return len(self._tokenizer.encode(text or "", disallowed_special=()))

    def count_messages(self, messages) -> Optional[int]:
        return self.count_text("\n".join(m.content for m in messages))

    # ---- 远端兜底 ----

    async def estimate_remote(
        self,
        text: str,
        client: ChatTransport,
        conversation: Optional[Conversation] = None,
    ) -> Optional[int]:
        """让远端模型估算 token 数，结果仅供参考。"""

        try:
            count = await self._estimate_by_shuffle(text, client, conversation)
            if count is not None:
                return count
            return await self._estimate_by_sorted_question(text, client, conversation)
        except BusinessError as e:
            logger.warning("Remote token estimation failed", extra={"extra": {"code": e.code, "error": e.message}})
            return None

    async def _estimate_by_shuffle(
        self,
        text: str,
        client: ChatTransport,
        conversation: Optional[Conversation],
    ) -> Optional[int]:
        # 打乱词序，避免模型直接复述记忆中的原文；token 数不受词序影响
        probe = Message(id=0, role="user", content=f"{shuffle_words(text, self._rng)}\nNevermind")
        res = await client.request_chat(
            [probe],
            conversation,
            model=self._settings.token_estimate_model,
            temperature=self._settings.token_estimate_temperature,
            presence_penalty=0,
        )
        if res is None or res.usage is None:
            return None
        return res.usage.prompt_tokens or None

    async def _estimate_by_sorted_question(
        self,
        text: str,
        client: ChatTransport,
        conversation: Optional[Conversation],
    ) -> Optional[int]:
        words = sorted(text.split())
        probe = Message(id=0, role="user", content=load_prompt("token_count_sorted", text=" ".join(words)))
        res = await client.request_chat(
            [probe],
            conversation,
            model=self._settings.token_fallback_model,
            temperature=self._settings.token_fallback_temperature,
            presence_penalty=0,
        )
        if res is None:
            return None
        return parse_token_count(res.content)

    async def annotate_token_count(
        self,
        message: Message,
        client: Optional[ChatTransport] = None,
        conversation: Optional[Conversation] = None,
    ) -> Message:
        """把 token 数写到 message.n_tokens；估算不出来时保持原样。"""

        if not message.content:
            return message
        count = self.count_text(message.content)
        if count is None and client is not None and getattr(self._settings, "remote_token_estimate", False):
            count = await self.estimate_remote(message.content, client, conversation)
        if count is not None:
            message.n_tokens = count
        return message
