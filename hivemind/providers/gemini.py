"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from hivemind.models import StreamCallbacks
from hivemind.providers.base import AIProvider, ChatMessage, ProviderError, status_code_of

logger = logging.getLogger(__name__)


def _to_contents(messages: list[ChatMessage]) -> list[genai_types.Content]:
    """Gemini calls the assistant role "model"."""
    return [
        genai_types.Content(
            role="model" if msg["role"] == "assistant" else "user",
            parts=[genai_types.Part(text=msg["content"])],
        )
        for msg in messages
    ]


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig, api_key: str) -> None:
        self._config = config
        api_key = (api_key or "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _generate_config(self) -> genai_types.GenerateContentConfig:
        tools = None
        if self._config.use_grounding:
            tools = [genai_types.Tool(google_search=genai_types.GoogleSearch())]
        return genai_types.GenerateContentConfig(
            max_output_tokens=self._config.max_tokens,
            tools=tools,
        )

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
            raise self._fail(callbacks, "Empty response text")

        logger.info("Gemini %s: %.2fs, %d chars", model, time.monotonic() - start, len(content))

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
            async for chunk in await self._client.aio.models.generate_content_stream(
                model=model,
                contents=_to_contents(messages),
                config=self._generate_config(),
            ):
                if chunk.text:
                    parts.append(chunk.text)
                    callbacks.on_token(chunk.text)
            return "".join(parts)

        response = await self._client.aio.models.generate_content(
            model=model,
            contents=_to_contents(messages),
            config=self._generate_config(),
        )
        return response.text or ""

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
            await asyncio.wait_for(
                self._client.aio.models.list(config={"page_size": 1}),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            logger.debug("Gemini key validation failed: %s", exc)
            return False
        return True
