"""增量上下文压缩。"""

from chat_core.compression.summarizer import (
    IncrementalSummarizer,
    SummaryState,
    build_summary_messages,
    summary_state,
)

__all__ = ["IncrementalSummarizer", "SummaryState", "build_summary_messages", "summary_state"]
