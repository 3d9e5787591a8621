"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from hivemind.models import StreamCallbacks
from hivemind.providers.base import AIProvider, ChatMessage, ProviderError, status_code_of

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig, api_key: str) -> None:
        self._config = config
        api_key = (api_key or "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        if config.base_url:
            self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, base_url=config.base_url)
        else:
            self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        callbacks: StreamCallbacks | None = None,
    ) -> str:
        model = model or self._config.model
        start = time.monotonic()
        try:
            content = await asyncio.wait_for(
                self._complete(messages, model, callbacks),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise self._fail(callbacks, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise self._fail(callbacks, f"API call failed: {exc}", status_code_of(exc)) from exc

        if not content:
            raise self._fail(callbacks, "No text blocks in response")

        logger.info("Anthropic %s: %.2fs, %d chars", model, time.monotonic() - start, len(content))

        if callbacks and callbacks.on_complete:
            callbacks.on_complete(content)
        return content

    async def _complete(
        self,
        messages: list[ChatMessage],
        model: str,
        callbacks: StreamCallbacks | None,
    ) -> str:
        if callbacks and callbacks.on_token:
            parts: list[str] = []
            async with self._client.messages.stream(
                model=model,
                max_tokens=self._config.max_tokens,
                messages=messages,
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        parts.append(text)
                        callbacks.on_token(text)
            return "".join(parts)

        response = await self._client.messages.create(
            model=model,
            max_tokens=self._config.max_tokens,
            messages=messages,
        )
        if not response.content:
            return ""
        text_blocks = [b.text for b in response.content if b.type == "text"]
        return "\n".join(text_blocks)

    def _fail(
        self,
        callbacks: StreamCallbacks | None,
        message: str,
        status_code: int | None = None,
    ) -> ProviderError:
        err = ProviderError(self._config.name, message, status_code)
        if callbacks and callbacks.on_error:
            callbacks.on_error(err)
        return err

    async def validate_key(self) -> bool:
        try:
            await asyncio.wait_for(self._client.models.list(limit=1), timeout=self._config.timeout_sec)
        except Exception as exc:
            logger.debug("Anthropic key validation failed: %s", exc)
            return False
        return True
