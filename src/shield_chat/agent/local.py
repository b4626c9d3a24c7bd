"""On-device generative tier: capability contract and LangChain adapter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from shield_chat.config import LocalModelConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class LocalInferenceUnavailableError(RuntimeError):
    """The accelerator capability is missing or the model is not loaded."""


class LocalInferenceAdapter(Protocol):
    """Contract the orchestrator expects from an on-device model runtime."""

    @property
    def available(self) -> bool:
        """Capability flag; callers must check it before `load`."""

    async def load(
        self, model_identifier: str, on_progress: ProgressCallback | None = None
    ) -> bool:
        """Prepare the model. Repeating a load for the same identifier is a no-op."""

    def generate(self, prompt: str, system_instruction: str = "") -> AsyncIterator[str]:
        """Stream answer text fragments in order."""


class ChatModelLocalAdapter:
    """Runs a LangChain chat model as the local tier.

    `model_factory` builds a chat model for a model identifier; when it is
    `None` the capability is reported unavailable. Loading happens off the
    event loop since factories may block on weights or a warm-up request.
    """

    def __init__(
        self,
        model_factory: Callable[[str], BaseChatModel] | None,
        config: LocalModelConfig | None = None,
    ) -> None:
        self._factory = model_factory
        self.config = config or LocalModelConfig()
        self._model: BaseChatModel | None = None
        self._model_identifier: str | None = None
        self.load_count = 0

    @property
    def available(self) -> bool:
        return self._factory is not None

    @property
    def ready(self) -> bool:
        return self._model is not None

    async def load(
        self, model_identifier: str, on_progress: ProgressCallback | None = None
    ) -> bool:
        if self._factory is None:
            raise LocalInferenceUnavailableError("accelerator capability not present")
        if self._model is not None and self._model_identifier == model_identifier:
            return True

        if on_progress is not None:
            on_progress(0.0)
        logger.info("Loading local model %s", model_identifier)
        self._model = await asyncio.to_thread(self._factory, model_identifier)
        self._model_identifier = model_identifier
        self.load_count += 1
        if on_progress is not None:
            on_progress(1.0)
        return True

    async def generate(self, prompt: str, system_instruction: str = "") -> AsyncIterator[str]:
        if self._model is None:
            raise LocalInferenceUnavailableError("local model not loaded")
        messages: list[Any] = []
        if system_instruction:
            messages.append(SystemMessage(content=system_instruction))
        messages.append(HumanMessage(content=prompt))

        async for chunk in self._model.astream(messages):
            text = _chunk_text(getattr(chunk, "content", chunk))
            if text:
                yield text


def openai_compatible_factory(
    base_url: str, *, api_key: str | None = None, temperature: float = 0.2
) -> Callable[[str], BaseChatModel]:
    """Factory for an OpenAI-compatible server running on the device."""

    def _factory(model_identifier: str) -> BaseChatModel:
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=model_identifier,
            base_url=base_url,
            api_key=api_key or "local",
            temperature=temperature,
            streaming=True,
        )

    return _factory


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content or "")
