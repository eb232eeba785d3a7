"""Token 统计（本地分词器 + 远端兜底估算）。"""

from chat_core.tokens.accountant import TokenAccountant, load_local_tokenizer, shuffle_words

__all__ = ["TokenAccountant", "load_local_tokenizer", "shuffle_words"]
