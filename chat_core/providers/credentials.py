"""凭证与端点解析。

优先级：
- 用户填写的 api_key；
- 否则在开启访问控制且填写了访问码时，使用 access_code_prefix + access_code；
- 都没有则不带 Authorization 头。
"""

from typing import Dict, Optional, Protocol

from chat_core.config.settings import settings


class CredentialProvider(Protocol):
    """出站请求所需的基础 URL 与认证头。"""

    def base_url(self) -> str:
        ...

    def auth_headers(self) -> Dict[str, str]:
        ...


def _valid(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def _bearer(token: str) -> str:
    return f"Bearer {token.strip()}"


class SettingsCredentialProvider:
    """从 Settings 读取凭证的默认实现。"""

    def __init__(self, cfg=settings):
        self._settings = cfg

    def base_url(self) -> str:
        return self._settings.openai_url

    def auth_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        token = getattr(self._settings, "api_key", None)
        access_code = getattr(self._settings, "access_code", None)
        if _valid(token):
            headers["Authorization"] = _bearer(token)
        elif getattr(self._settings, "enable_access_control", False) and _valid(access_code):
            prefix = getattr(self._settings, "access_code_prefix", "ak-")
            headers["Authorization"] = _bearer(prefix + access_code)
        return headers


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"
