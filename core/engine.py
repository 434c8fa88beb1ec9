"""
Coach Engine — LLM-powered calls behind a practice session.

Three external calls, all single-shot from the caller's point of view:
- generate_customer_profile(): structured CustomerProfile
- stream_avatar_response():   the simulated customer's next turn, streamed
- evaluate_pitch():            structured PitchEvaluation

Structured responses are parsed as JSON and validated with pydantic; a
response that does not fit the schema raises SchemaViolationError and is
never coerced. Transient provider failures (rate limits, 5xx, connection
drops) are retried inside _call_llm only. Streams are not retried since
fragments may already have been shown.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, AsyncIterator, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import Settings, get_settings
from core.prompts import (
    EVALUATION_SYSTEM,
    avatar_system_prompt,
    evaluation_prompt,
    profile_prompt,
)
from models.schemas import CustomerProfile, PitchEvaluation, PracticeSettings, Product

logger = structlog.get_logger()

FALLBACK_FEEDBACK = (
    "No pudimos evaluar tu pitch automáticamente en este momento. "
    "Revisa la conversación y vuelve a intentarlo en tu siguiente práctica."
)

M = TypeVar("M", bound=BaseModel)


class CoachEngineError(Exception):
    """An LLM call failed."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class TransientLLMError(CoachEngineError):
    """Rate limit, server error or dropped connection. Worth another attempt."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class SchemaViolationError(CoachEngineError):
    """The model answered, but not with the structure we asked for."""


def _is_transient(error: Exception) -> bool:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    return type(error).__name__ in ("APIConnectionError", "APITimeoutError")


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object out of an LLM reply, tolerating ``` fences."""
    result = (raw or "").strip()
    if result.startswith("```"):
        result = result.split("```")[1].strip()
        if result.startswith("json"):
            result = result[4:].strip()
    if not result:
        raise SchemaViolationError("Empty response from model")
    try:
        data = json.loads(result)
    except json.JSONDecodeError as e:
        raise SchemaViolationError(f"Response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SchemaViolationError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def validate_as(model: Type[M], data: dict[str, Any]) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise SchemaViolationError(
            f"{model.__name__} failed validation: {e.error_count()} error(s)"
        ) from e


def default_evaluation() -> PitchEvaluation:
    """Neutral evaluation used when the real one cannot be produced."""
    return PitchEvaluation(
        greeting=5,
        need_identification=5,
        product_presentation=5,
        benefits_communication=5,
        objection_handling=5,
        closing=5,
        empathy=5,
        clarity=5,
        overall_score=5,
        feedback=FALLBACK_FEEDBACK,
    )


class PitchCoachEngine:
    """
    Talks to OpenAI or Anthropic, depending on llm.provider.
    SDK clients are created lazily on first use.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._client = None
        self._provider = self._settings.llm.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._settings.llm.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._settings.llm.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self._settings.llm.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                raise CoachEngineError(f"Could not initialise {self._provider} client: {e}") from e
        return self._client

    @retry(
        retry=retry_if_exception_type(TransientLLMError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
        json_mode: bool = False,
    ) -> str:
        """Unified non-streaming call for both providers."""
        client = await self._get_client()
        max_tokens = max_tokens or self._settings.llm.max_tokens
        temperature = temperature if temperature is not None else self._settings.llm.temperature

        try:
            if self.is_openai:
                kwargs: dict[str, Any] = {}
                if json_mode:
                    kwargs["response_format"] = {"type": "json_object"}
                response = await client.chat.completions.create(
                    model=self._settings.llm.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "system", "content": system}] + messages,
                    **kwargs,
                )
                return response.choices[0].message.content or ""
            response = await client.messages.create(
                model=self._settings.llm.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
            return response.content[0].text
        except Exception as e:
            if _is_transient(e):
                logger.warning("llm_call_transient_failure", provider=self._provider, error=str(e))
                raise TransientLLMError(str(e)) from e
            logger.error("llm_call_failed", provider=self._provider, error=str(e))
            raise CoachEngineError(str(e)) from e

    async def _stream_llm(self, system: str, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        client = await self._get_client()
        try:
            if self.is_openai:
                stream = await client.chat.completions.create(
                    model=self._settings.llm.model,
                    max_tokens=self._settings.llm.max_tokens,
                    temperature=self._settings.llm.temperature,
                    messages=[{"role": "system", "content": system}] + messages,
                    stream=True,
                )
                async for chunk in stream:
                    if chunk.choices and chunk.choices[0].delta.content:
                        yield chunk.choices[0].delta.content
            else:
                async with client.messages.stream(
                    model=self._settings.llm.model,
                    max_tokens=self._settings.llm.max_tokens,
                    temperature=self._settings.llm.temperature,
                    system=system,
                    messages=messages,
                ) as stream:
                    async for text in stream.text_stream:
                        yield text
        except CoachEngineError:
            raise
        except Exception as e:
            logger.error("llm_stream_failed", provider=self._provider, error=str(e))
            raise CoachEngineError(str(e), retryable=_is_transient(e)) from e

    # ── Profile ───────────────────────────────────────────────

    async def generate_customer_profile(self, settings: PracticeSettings) -> CustomerProfile:
        raw = await self._call_llm(
            system=profile_prompt(settings),
            messages=[{"role": "user", "content": "Genera el perfil del cliente."}],
            temperature=0.9,
            json_mode=True,
        )
        data = parse_json_object(raw)
        # The requested tier wins over whatever the model echoed back
        data["difficultyLevel"] = settings.difficulty_level.value
        data.pop("difficulty_level", None)
        profile = validate_as(CustomerProfile, data)
        logger.info("customer_profile_generated", name=profile.name,
                    product=settings.product.value, difficulty=settings.difficulty_level.value)
        return profile

    # ── Avatar turns ──────────────────────────────────────────

    async def stream_avatar_response(
        self,
        settings: PracticeSettings,
        profile: CustomerProfile,
        history: list[dict[str, str]],
        turn_number: int,
    ) -> AsyncIterator[str]:
        """
        Stream the customer's reply to the latest user turn in `history`.
        Earlier turns (up to practice.history_window) go into the prompt.
        """
        window = self._settings.practice.history_window
        pitch_text = ""
        earlier = history
        if history and history[-1]["sender"] == "user":
            pitch_text = history[-1]["text"]
            earlier = history[:-1]

        system = avatar_system_prompt(
            settings.product,
            profile,
            turn_number,
            self._settings.practice.closing_thresholds,
            history=earlier[-window:] if window else earlier,
        )
        logger.debug("avatar_response_requested", turn=turn_number, history=len(earlier))
        async for chunk in self._stream_llm(system, [{"role": "user", "content": pitch_text or "..."}]):
            yield chunk

    # ── Evaluation ────────────────────────────────────────────

    async def evaluate_pitch(
        self,
        product: Product,
        profile: CustomerProfile,
        conversation: list[dict[str, str]],
    ) -> PitchEvaluation:
        raw = await self._call_llm(
            system=EVALUATION_SYSTEM,
            messages=[{"role": "user", "content": evaluation_prompt(product, profile, conversation)}],
            temperature=0.3,
            json_mode=True,
        )
        evaluation = validate_as(PitchEvaluation, parse_json_object(raw))
        logger.info("pitch_evaluated", overall=evaluation.overall_score, turns=len(conversation))
        return evaluation

    @staticmethod
    def default_evaluation() -> PitchEvaluation:
        return default_evaluation()
