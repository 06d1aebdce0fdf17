"""
Calos Assistant — Language-Model Gateway.

Thin async wrapper around Gemini (google-generativeai) with three
generation presets and retry on rate-limit / overload errors. Every other
module talks to the model through the `LLMGateway` protocol so tests can
swap in an AsyncMock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Protocol

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {429, 503}
_TRANSIENT_NAMES = {"ResourceExhausted", "ServiceUnavailable", "TooManyRequests"}


class LLMError(Exception):
    """The model call failed and will not be retried."""


class TransientLLMError(LLMError):
    """The model kept answering 429/503 after all retries."""


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float
    top_p: float
    top_k: int
    max_output_tokens: int

    def to_dict(self) -> dict:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "max_output_tokens": self.max_output_tokens,
        }

    def with_overrides(self, **kwargs) -> GenerationConfig:
        values = self.to_dict()
        values.update(kwargs)
        return GenerationConfig(**values)


DEFAULT_CONFIG = GenerationConfig(temperature=0.7, top_p=0.95, top_k=40, max_output_tokens=8192)
CONVERSATIONAL_CONFIG = GenerationConfig(temperature=0.9, top_p=0.95, top_k=50, max_output_tokens=2048)
ACTION_EXTRACTION_CONFIG = GenerationConfig(temperature=0.3, top_p=0.9, top_k=20, max_output_tokens=1024)


class LLMGateway(Protocol):
    async def generate(self, prompt: str, config: GenerationConfig = DEFAULT_CONFIG) -> str: ...

    async def chat(
        self,
        history: list[dict],
        message: str,
        config: GenerationConfig = CONVERSATIONAL_CONFIG,
        system_instruction: str | None = None,
    ) -> str: ...


def format_history(messages: Iterable) -> list[dict]:
    """Convert stored chat turns to Gemini history entries.

    Accepts ConversationMessage objects or plain ``{"role", "content"}``
    dicts. The ``assistant`` role becomes ``model``.
    """
    history = []
    for msg in messages:
        if isinstance(msg, dict):
            role, content = msg["role"], msg["content"]
        else:
            role, content = msg.role, msg.content
        history.append({
            "role": "model" if role == "assistant" else "user",
            "parts": [content],
        })
    return history


def _status_code(exc: BaseException) -> int | None:
    for attr in ("code", "status_code", "status"):
        value = getattr(exc, attr, None)
        if value is None or callable(value):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def is_transient(exc: BaseException) -> bool:
    """True for rate-limit (429) and overload (503) failures."""
    if isinstance(exc, TransientLLMError):
        return True
    if type(exc).__name__ in _TRANSIENT_NAMES:
        return True
    return _status_code(exc) in _TRANSIENT_STATUS


class GeminiGateway:
    """LLMGateway backed by google-generativeai."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        jitter: float | None = None,
    ) -> None:
        if api_key is None or model is None or max_retries is None \
                or base_delay is None or jitter is None:
            from calos.config import settings
            api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
            model = model if model is not None else settings.GEMINI_MODEL
            max_retries = max_retries if max_retries is not None else settings.LLM_MAX_RETRIES
            base_delay = base_delay if base_delay is not None else settings.LLM_RETRY_BASE_SECONDS
            jitter = jitter if jitter is not None else settings.LLM_RETRY_JITTER_SECONDS

        self._api_key = api_key
        self._model_name = model
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._jitter = jitter
        self._configured = False

    def _model(self, system_instruction: str | None = None):
        import google.generativeai as genai

        if not self._configured:
            genai.configure(api_key=self._api_key)
            self._configured = True
        return genai.GenerativeModel(
            model_name=self._model_name,
            system_instruction=system_instruction,
        )

    async def _generate_once(self, prompt: str, config: GenerationConfig) -> str:
        response = await self._model().generate_content_async(
            prompt, generation_config=config.to_dict(),
        )
        return response.text

    async def _chat_once(
        self,
        history: list[dict],
        message: str,
        config: GenerationConfig,
        system_instruction: str | None,
    ) -> str:
        session = self._model(system_instruction).start_chat(history=history)
        response = await session.send_message_async(
            message, generation_config=config.to_dict(),
        )
        return response.text

    async def _with_retry(self, call: Callable[[], Awaitable[str]]) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._base_delay, exp_base=2)
            + wait_random(0, self._jitter),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await call()
        except LLMError:
            raise
        except Exception as exc:
            if is_transient(exc):
                logger.error("LLM still unavailable after %d retries: %s", self._max_retries, exc)
                raise TransientLLMError(str(exc)) from exc
            raise LLMError(str(exc)) from exc
        raise LLMError("LLM call produced no result")

    async def generate(self, prompt: str, config: GenerationConfig = DEFAULT_CONFIG) -> str:
        """Single-shot completion. Raises LLMError / TransientLLMError."""
        return await self._with_retry(lambda: self._generate_once(prompt, config))

    async def chat(
        self,
        history: list[dict],
        message: str,
        config: GenerationConfig = CONVERSATIONAL_CONFIG,
        system_instruction: str | None = None,
    ) -> str:
        """Multi-turn completion over Gemini-formatted ``history``."""
        return await self._with_retry(
            lambda: self._chat_once(history, message, config, system_instruction)
        )
