"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在回调层或 UI 层做统一捕获与用户提示。

传输层错误（UnauthorizedError / StreamError / NetworkError）只会通过
on_error 回调交给调用方；摘要与 token 估算的失败在本地被吸收。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STREAM_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 session_index、message_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class UnauthorizedError(BusinessError):
    """服务端返回 401，需要提示用户重新填写凭证。"""

    def __init__(self, message: str = "Unauthorized", **extra):
        super().__init__(code="UNAUTHORIZED", message=message, http_status=401, **extra)


class StreamError(BusinessError):
    """流式请求返回了除 401 以外的非 2xx 状态。"""

    def __init__(self, http_status: int, message: str = "Stream Error", **extra):
        super().__init__(code="STREAM_ERROR", message=message, http_status=http_status, **extra)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、解码失败等。"""


class RequestAborted(NetworkError):
    """取消句柄被触发（用户停止或看门狗超时）时，挂起中的等待抛出该异常。"""

    def __init__(self, reason: str = "aborted", **extra):
        super().__init__(code="ABORTED", message=f"Request aborted: {reason}", **extra)
        self.reason = reason


class MalformedResponseError(BusinessError):
    """非流式响应体无法解析为 JSON。"""


class SummarizationError(BusinessError):
    """摘要子请求失败或返回空内容，由压缩引擎吸收。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
