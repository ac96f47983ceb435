from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import orjson

# Client headers worth relaying to an OpenAI-compatible provider.
_FORWARDED_HEADERS = ("authorization", "openai-organization", "openai-project")


def forwardable_headers(headers: Any) -> dict[str, str]:
    return {name: headers[name] for name in _FORWARDED_HEADERS if name in headers}


class UpstreamClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def completions_url(self) -> str:
        return f"{self._base_url}/v1/chat/completions"

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _error_body(response: httpx.Response, text: str) -> dict[str, Any]:
        return {
            "error": {
                "message": text,
                "type": "upstream_error",
                "status_code": response.status_code,
            }
        }

    async def chat_completions(
        self,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> tuple[int, dict[str, Any], dict[str, str]]:
        response = await self._client.post(self.completions_url, json=payload, headers=headers)
        content_type = response.headers.get("content-type", "")
        body: dict[str, Any]
        if "application/json" in content_type:
            body = response.json()
        else:
            body = self._error_body(response, response.text)

        passthrough_headers = {
            "x-request-id": response.headers.get("x-request-id", ""),
        }
        return response.status_code, body, passthrough_headers

    @asynccontextmanager
    async def stream_chat_completions(
        self,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming request; the caller iterates ``response.aiter_lines()``."""
        request = self._client.build_request("POST", self.completions_url, json=payload, headers=headers)
        response = await self._client.send(request, stream=True)
        try:
            yield response
        finally:
            await response.aclose()

    async def read_error(self, response: httpx.Response) -> dict[str, Any]:
        raw = await response.aread()
        if "application/json" in response.headers.get("content-type", ""):
            try:
                return orjson.loads(raw)
            except orjson.JSONDecodeError:
                pass
        return self._error_body(response, raw.decode("utf-8", errors="replace"))
