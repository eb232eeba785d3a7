"""OpenAI 兼容 Chat Completions 客户端。

接口风格与 OpenAI 一致：
- URL: {openai_url}/v1/chat/completions
- 认证: Authorization: Bearer <token>（见 credentials）

本模块负责：

1. 通过 RequestAssembler 把 Message 列表转换为请求体。
2. 流式调用：登记取消句柄、两个看门狗（整体响应超时 / 分片空闲超时）、
   增量解码，并通过 StreamEvent 或回调把累计文本交给调用方。
3. 非流式调用：摘要子请求和 token 估算复用。
4. 只读的用量/额度查询。
"""

import asyncio
from datetime import date, timedelta
from typing import AsyncIterator, Callable, Dict, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, Message
from chat_core.domain.exceptions import (
    BusinessError,
    MalformedResponseError,
    NetworkError,
    StreamError,
    UnauthorizedError,
)
from chat_core.domain.models import ChatRequest, ChatResult, StreamEvent, UsageReport
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.assembler import RequestAssembler
from chat_core.providers.base import TokenCounter
from chat_core.providers.cancellation import CancellationHandle
from chat_core.providers.credentials import CredentialProvider, SettingsCredentialProvider, join_url
from chat_core.providers.decoding import StreamDecoder


OnMessage = Callable[[str, bool, Optional[int], Optional[int]], None]
OnError = Callable[[BusinessError, Optional[int]], None]
OnController = Callable[[CancellationHandle], None]
ShowError = Callable[[str], None]

# httpx.InvalidURL 不是 HTTPError 的子类
_TRANSPORT_ERRORS = (httpx.HTTPError, httpx.InvalidURL, OSError)


def _log_show_error(message: str) -> None:
    logger.error(message)


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class ChatStream:
    """一次流式对话，只能迭代一次。

    迭代产出 StreamEvent(text, done=False) 若干次，最后产出一次 done=True；
    出错时抛出 UnauthorizedError / StreamError / NetworkError。
    handle 可用于在任意时刻取消（例如“停止生成”）。
    """

    def __init__(
        self,
        client: "OpenAIClient",
        request: ChatRequest,
        prompt_tokens: Optional[int] = None,
        on_controller: Optional[OnController] = None,
    ):
        self.handle = CancellationHandle()
        self.request = request
        self.prompt_tokens = prompt_tokens
        self._client = client
        self._on_controller = on_controller
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("ChatStream can only be iterated once")
        self._consumed = True
        return self._iterate()

    def abort(self, reason: str = "stopped") -> None:
        self.handle.abort(reason)

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        cfg = self._client._settings
        url = self._client.chat_url()
        log_ctx = {
            "model": self.request.model,
            "messages": len(self.request.messages),
            "url": url,
        }
        logger.info("Starting chat stream", extra={"extra": log_ctx})
        try:
            async with httpx.AsyncClient(timeout=None, trust_env=False) as http:
                request = http.build_request(
                    "POST",
                    url,
                    json=self.request.to_payload(),
                    headers=self._client.headers(content_type=True),
                )
                try:
                    response = await self.handle.wait(
                        http.send(request, stream=True),
                        timeout=cfg.request_timeout,
                    )
                except asyncio.TimeoutError:
                    self.handle.abort("request timeout")
                    logger.warning("No response before request timeout", extra={"extra": log_ctx})
                    raise NetworkError(
                        code="REQUEST_TIMEOUT",
                        message=f"No response within {cfg.request_timeout}s",
                    )
                try:
                    async for event in self._read(response, log_ctx):
                        yield event
                finally:
                    self.handle.abort("finished")
                    await response.aclose()
        except BusinessError:
            raise
        except _TRANSPORT_ERRORS as e:
            logger.error("NetWork Error", extra={"extra": {**log_ctx, "error": str(e)}})
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e

    async def _read(self, response: httpx.Response, log_ctx: Dict) -> AsyncIterator[StreamEvent]:
        cfg = self._client._settings
        status = response.status_code
        if status == 401:
            logger.error("Unauthorized", extra={"extra": {**log_ctx, "status": status}})
            raise UnauthorizedError()
        if not 200 <= status < 300:
            try:
                body = await self.handle.wait(response.aread(), timeout=cfg.stream_idle_timeout)
            except asyncio.TimeoutError:
                body = b""
            logger.error(
                "Stream Error",
                extra={"extra": {**log_ctx, "status": status, "body": body[:500].decode("utf-8", "replace")}},
            )
            raise StreamError(http_status=status)

        if self._on_controller is not None:
            self._on_controller(self.handle)

        decoder = StreamDecoder(getattr(cfg, "stream_format", "text"))
        chunks = response.aiter_bytes()
        text = ""
        while True:
            try:
                chunk = await self.handle.wait(_next_chunk(chunks), timeout=cfg.stream_idle_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Stream stalled, finishing with accumulated text",
                    extra={"extra": {**log_ctx, "chars": len(text)}},
                )
                break
            if not chunk:
                break
            text += decoder.feed(chunk)
            yield StreamEvent(text=text, done=False, prompt_tokens=self.prompt_tokens)

        text += decoder.flush()
        completion_tokens = self._client.count_tokens(text)
        logger.info(
            "Chat stream finished",
            extra={"extra": {**log_ctx, "chars": len(text), "completion_tokens": completion_tokens}},
        )
        yield StreamEvent(
            text=text,
            done=True,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=completion_tokens,
        )


class OpenAIClient:
    """OpenAI 兼容接口的客户端实现。

    - name: Provider 名称（供日志/调试使用）。
    - open_stream / request_chat_stream: 流式调用（迭代器 / 回调两种形式）。
    - request_chat: 非流式调用，返回 ChatResult 或 None。
    """

    name = "openai"

    def __init__(
        self,
        cfg=settings,
        credentials: Optional[CredentialProvider] = None,
        assembler: Optional[RequestAssembler] = None,
        token_counter: Optional[TokenCounter] = None,
        show_error: Optional[ShowError] = None,
    ):
        self._settings = cfg
        self._credentials = credentials or SettingsCredentialProvider(cfg)
        self._assembler = assembler or RequestAssembler(cfg)
        self._token_counter = token_counter
        self._show_error = show_error or _log_show_error

    # ---- 辅助方法 ----

    def url(self, path: str) -> str:
        return join_url(self._credentials.base_url(), path)

    def chat_url(self) -> str:
        return self.url(getattr(self._settings, "chat_path", "v1/chat/completions"))

    def headers(self, content_type: bool = False) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if content_type:
            headers["Content-Type"] = "application/json"
        headers.update(self._credentials.auth_headers())
        return headers

    def count_tokens(self, text: str) -> Optional[int]:
        if self._token_counter is None:
            return None
        return self._token_counter.count_text(text)

    # ---- 流式 ----

    def open_stream(
        self,
        messages: Sequence[Message],
        conversation: Optional[Conversation] = None,
        *,
        override_model: Optional[str] = None,
        on_controller: Optional[OnController] = None,
    ) -> ChatStream:
        req = self._assembler.build(
            messages,
            conversation,
            stream=True,
            override_model=override_model,
        )
        prompt_tokens = self.count_tokens("\n".join(m.content for m in req.messages))
        return ChatStream(self, req, prompt_tokens=prompt_tokens, on_controller=on_controller)

    async def request_chat_stream(
        self,
        messages: Sequence[Message],
        conversation: Optional[Conversation] = None,
        *,
        on_message: OnMessage,
        on_error: OnError,
        on_controller: Optional[OnController] = None,
        override_model: Optional[str] = None,
    ) -> None:
        """回调形式的流式调用。

        每次调用恰好触发一次 on_message(..., done=True) 或一次 on_error，二者不会同时出现。
        传输层错误不会向外抛出。
        """

        try:
            stream = self.open_stream(
                messages,
                conversation,
                override_model=override_model,
                on_controller=on_controller,
            )
            async for event in stream:
                on_message(event.text, event.done, event.prompt_tokens, event.completion_tokens)
        except (UnauthorizedError, StreamError) as e:
            on_error(e, e.http_status)
        except BusinessError as e:
            on_error(e, None)

    # ---- 非流式 ----

    async def request_chat(
        self,
        messages: Sequence[Message],
        conversation: Optional[Conversation] = None,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        presence_penalty: Optional[float] = None,
    ) -> Optional[ChatResult]:
        """执行一次非流式调用。

        401 -> UnauthorizedError，其他非 2xx -> StreamError，网络失败 -> NetworkError；
        响应体不是合法 JSON 时记录日志并返回 None。
        """

        req = self._assembler.build(
            messages,
            conversation,
            stream=False,
            override_model=model,
            override_temperature=temperature,
            override_presence_penalty=presence_penalty,
        )
        try:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout, trust_env=False) as client:
                resp = await client.post(self.chat_url(), json=req.to_payload(), headers=self.headers())
        except _TRANSPORT_ERRORS as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e
        if resp.status_code == 401:
            raise UnauthorizedError()
        if resp.status_code >= 400:
            raise StreamError(http_status=resp.status_code, message=resp.text[:500])
        try:
            data = resp.json()
            if not isinstance(data, dict):
                raise MalformedResponseError(code="MALFORMED_RESPONSE", message="response is not an object")
        except (ValueError, MalformedResponseError) as e:
            logger.error("[Request Chat] malformed response", extra={"extra": {"error": str(e), "body": resp.text[:500]}})
            return None
        return ChatResult.from_payload(data)

    async def request_with_prompt(
        self,
        messages: Sequence[Message],
        prompt: str,
        conversation: Optional[Conversation] = None,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        presence_penalty: Optional[float] = None,
    ) -> str:
        next_id = max((m.id for m in messages), default=0) + 1
        full = list(messages) + [Message(id=next_id, role="user", content=prompt)]
        res = await self.request_chat(
            full,
            conversation,
            model=model,
            temperature=temperature,
            presence_penalty=presence_penalty,
        )
        if res is None:
            return ""
        return res.content or ""

    # ---- 用量查询 ----

    async def request_usage(self, today: Optional[date] = None) -> Optional[UsageReport]:
        """查询本月用量与额度，仅用于展示。"""

        today = today or date.today()
        start_date = today.replace(day=1).isoformat()
        end_date = (today + timedelta(days=1)).isoformat()
        usage_path = getattr(self._settings, "usage_path", "dashboard/billing/usage")
        subs_path = getattr(self._settings, "subscription_path", "dashboard/billing/subscription")
        try:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout, trust_env=False) as client:
                used, subs = await asyncio.gather(
                    client.get(
                        self.url(usage_path),
                        params={"start_date": start_date, "end_date": end_date},
                        headers=self.headers(),
                    ),
                    client.get(self.url(subs_path), headers=self.headers()),
                )
        except _TRANSPORT_ERRORS as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e

        try:
            response = used.json()
            total = subs.json()
        except ValueError as e:
            logger.error("[Request Usage] malformed response", extra={"extra": {"error": str(e)}})
            return None
        if not isinstance(response, dict) or not isinstance(total, dict):
            logger.error("[Request Usage] unexpected response shape")
            return None

        error = response.get("error")
        if not isinstance(error, dict):
            error = {}
        if error.get("type"):
            self._show_error(error.get("message") or error["type"])
            return None

        used_usd = response.get("total_usage")
        if not isinstance(used_usd, (int, float)):
            used_usd = None
        elif used_usd:
            used_usd = round(used_usd) / 100
        limit_usd = total.get("hard_limit_usd")
        if not isinstance(limit_usd, (int, float)):
            limit_usd = None
        elif limit_usd:
            limit_usd = round(limit_usd * 100) / 100
        return UsageReport(used=used_usd, subscription=limit_usd, raw={"usage": response, "subscription": total})
