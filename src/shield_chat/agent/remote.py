"""Remote inference tier over a streaming HTTP channel."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from shield_chat.config import RemoteConfig
from shield_chat.types import Message

logger = logging.getLogger(__name__)


class RemoteInferenceError(RuntimeError):
    """The remote service refused the request or the channel failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transport(self) -> bool:
        return self.status_code is None


@dataclass(slots=True)
class RemoteRequest:
    messages: list[Message]
    language: str
    csrf_token: str
    honeypot_value: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "messages": [message.to_payload() for message in self.messages],
            "lang": self.language,
            "csrf": self.csrf_token,
            "hp": self.honeypot_value,
        }


class RemoteInferenceClient:
    """Posts the trailing conversation window and streams the response body.

    The response body is yielded as raw text chunks exactly as they arrive;
    framing is the decoder's job.
    """

    def __init__(
        self,
        config: RemoteConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or RemoteConfig()
        self._client = client
        self._owns_client = client is None

    def build_request(
        self,
        history: list[Message],
        *,
        language: str,
        csrf_token: str,
        honeypot_value: str = "",
    ) -> RemoteRequest:
        window = history[-self.config.history_window :]
        return RemoteRequest(
            messages=list(window),
            language=language,
            csrf_token=csrf_token,
            honeypot_value=honeypot_value,
        )

    async def stream(self, request: RemoteRequest) -> AsyncIterator[str]:
        client = self._get_client()
        headers = {self.config.csrf_header: request.csrf_token}
        try:
            async with client.stream(
                "POST",
                self.config.chat_path,
                json=request.to_payload(),
                headers=headers,
                timeout=self.config.timeout_seconds,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise RemoteInferenceError(
                        f"remote service returned {response.status_code}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_text():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            logger.warning("Remote stream failed: %s", exc)
            raise RemoteInferenceError(str(exc) or exc.__class__.__name__) from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
        return self._client
