"""流式响应体解码。

字节分片 -> 文本增量。UTF-8 解码器跨分片保留未完成的多字节序列；
sse 模式下再从 data: 行中取出 choices[0].delta.content。
"""

import codecs
import json
from typing import List

from chat_core.infrastructure.logging.logger import logger


class StreamDecoder:
    def __init__(self, stream_format: str = "text", encoding: str = "utf-8"):
        self._format = stream_format
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> str:
        return self._convert(self._decoder.decode(chunk, final=False))

    def flush(self) -> str:
        text = self._convert(self._decoder.decode(b"", final=True))
        if self._format == "sse" and self._pending:
            text += self._parse_lines([self._pending])
            self._pending = ""
        return text

    def _convert(self, text: str) -> str:
        if self._format != "sse":
            return text
        buf = self._pending + text
        lines = buf.split("\n")
        self._pending = lines.pop()
        return self._parse_lines(lines)

    @staticmethod
    def _parse_lines(lines: List[str]) -> str:
        out: List[str] = []
        for line in lines:
            data_str = line.strip()
            if data_str.startswith("data:"):
                data_str = data_str[5:].strip()
            if not data_str or data_str == "[DONE]":
                continue
            try:
                payload = json.loads(data_str)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON stream line", extra={"extra": {"line": data_str[:200]}})
                continue
            choices = payload.get("choices") if isinstance(payload, dict) else None
            if not choices:
                continue
            delta = choices[0].get("delta") or {}
            content = delta.get("content")
            if content:
                out.append(str(content))
        return "".join(out)
