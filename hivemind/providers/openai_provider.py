"""OpenAI provider using openai SDK with native async."""

import asyncio
import logging
import time

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from hivemind.models import StreamCallbacks
from hivemind.providers.base import AIProvider, ChatMessage, ProviderError, status_code_of

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ModelConfig, api_key: str) -> None:
        self._config = config
        api_key = (api_key or "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        if config.base_url:
            self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        else:
            self._client = AsyncOpenAI(api_key=api_key)

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
            raise self._fail(callbacks, "Empty response content")

        logger.info("OpenAI %s: %.2fs, %d chars", model, time.monotonic() - start, len(content))

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
            stream = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=self._config.max_tokens,
                stream=True,
            )
            parts: list[str] = []
            async for chunk in stream:
                if not chunk.choices:
                    continue
                token = chunk.choices[0].delta.content
                if token:
                    parts.append(token)
                    callbacks.on_token(token)
            return "".join(parts)

        response = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=self._config.max_tokens,
        )
        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            return ""
        return choice.message.content

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
            await asyncio.wait_for(self._client.models.list(), timeout=self._config.timeout_sec)
        except Exception as exc:
            logger.debug("OpenAI key validation failed: %s", exc)
            return False
        return True
