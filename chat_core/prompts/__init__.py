"""提示词加载工具。

按语言(locale) 从 prompts/<locale>/ 目录读取提示词文本，
文本中的 {prefix} 等占位符由调用方通过 format 参数填充。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent

# 被摘要替换过的消息在发出前统一加上这个标记
INCREMENTAL_SUMMARY_PREFIX = "[Summary]"


@lru_cache(maxsize=None)
def _read_prompt(name: str, locale: str) -> str:
    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8").strip()


def load_prompt(name: str, locale: str = "en", **params: str) -> str:
    """根据名称和语言加载提示词文本，并填充占位符。"""

    text = _read_prompt(name, locale)
    return text.format(**params) if params else text
