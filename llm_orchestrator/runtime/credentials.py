from __future__ import annotations

from typing import Protocol


class CredentialsProvider(Protocol):
    async def base_url(self) -> str: ...

    async def auth_header(self) -> str | None: ...


class StaticCredentials:
    """Fixed base URL and bearer key, typically read from ``Settings``."""

    def __init__(self, base_url: str, api_key: str | None = None) -> None:
        self._base_url = base_url.strip().rstrip("/")
        self._api_key = (api_key or "").strip() or None

    async def base_url(self) -> str:
        return self._base_url

    async def auth_header(self) -> str | None:
        if self._api_key is None:
            return None
        return f"Bearer {self._api_key}"


def join_url(base: str, path: str) -> str:
    left = base.strip().rstrip("/")
    right = path.strip()
    if not left:
        return right
    if not right:
        return left
    if not right.startswith("/"):
        right = f"/{right}"
    # A base that already ends in /v1 must not produce /v1/v1/...
    if left.endswith("/v1") and right.startswith("/v1/"):
        right = right[3:]
    return f"{left}{right}"
