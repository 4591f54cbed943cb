"""
Resilient access to language-model providers and the Azure DevOps API.

Provides:
- RequestSpec: one outbound HTTP request, with an explicit idempotency flag
- classify_response: maps non-2xx responses to rate-limited/transient/permanent errors
- classify_openai_error: the same classification for OpenAI SDK exceptions
- ResilientProviderClient.call: retries rate-limited and transient failures under a BackoffPolicy
- ResilientProviderClient.complete: chat completion across an ordered list of providers
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from libs.common.backoff import BackoffPolicy, Deadline
from libs.common.errors import (
    ConfigurationError,
    PermanentUpstreamError,
    RateLimitError,
    TransientUpstreamError,
    UpstreamError,
)
from libs.common.settings import Settings

logger = structlog.get_logger(__name__)

DEFAULT_RATE_LIMIT_WAIT_SECONDS = 3.0
_WAIT_HINT = re.compile(r"try again in (\d+(?:\.\d+)?)\s*(ms|s)\b", re.IGNORECASE)
_NON_IDEMPOTENT_METHODS = frozenset({"DELETE", "PATCH"})


@dataclass(frozen=True)
class RequestSpec:
    """A single outbound request. ``idempotent=None`` derives it from the method."""

    method: str
    url: str
    provider: str
    json: Optional[Any] = None
    params: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    idempotent: Optional[bool] = None
    timeout: Optional[float] = None

    @property
    def retryable(self) -> bool:
        if self.idempotent is not None:
            return self.idempotent
        return self.method.upper() not in _NON_IDEMPOTENT_METHODS


@dataclass(frozen=True)
class LLMProvider:
    name: str
    base_url: str
    api_key: str
    models: Dict[str, str]
    extra_headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Completion:
    content: str
    provider: str
    model: str
    usage: Dict[str, Any] = field(default_factory=dict)


def extract_wait_time(text: str, headers: Optional[httpx.Headers] = None) -> float:
    """Seconds to wait before retrying, from ``Retry-After`` or a "try again in 3.2s" hint."""
    if headers is not None:
        retry_after = headers.get("retry-after")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
    match = _WAIT_HINT.search(text or "")
    if match:
        value = float(match.group(1))
        return value / 1000 if match.group(2).lower() == "ms" else value
    return DEFAULT_RATE_LIMIT_WAIT_SECONDS


def classify_response(response: httpx.Response, provider: str) -> Optional[UpstreamError]:
    """Return the classified error for a non-2xx response, or None on success."""
    status = response.status_code
    if status < 400:
        return None

    body = response.text or ""
    snippet = body[:200]

    if status == 429 or "rate limit" in body.lower():
        return RateLimitError(
            f"{provider} rate limited the request",
            provider=provider,
            status=status,
            retry_after_seconds=extract_wait_time(body, response.headers),
        )
    if status == 408 or status >= 500:
        return TransientUpstreamError(f"{provider} returned {status}: {snippet}", provider=provider, status=status)
    return PermanentUpstreamError(f"{provider} returned {status}: {snippet}", provider=provider, status=status)


def classify_openai_error(error: openai.APIError, provider: str) -> UpstreamError:
    """Map an OpenAI SDK exception onto the upstream error taxonomy."""
    if isinstance(error, openai.RateLimitError):
        return RateLimitError(
            f"{provider} rate limited the request",
            provider=provider,
            status=error.status_code,
            retry_after_seconds=extract_wait_time(error.message, error.response.headers),
        )
    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(error, openai.APIConnectionError):
        return TransientUpstreamError(
            f"{provider} connection failed: {type(error).__name__}", provider=provider
        )
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if "rate limit" in (error.message or "").lower():
            return RateLimitError(
                f"{provider} rate limited the request",
                provider=provider,
                status=status,
                retry_after_seconds=extract_wait_time(error.message, error.response.headers),
            )
        if status == 408 or status >= 500:
            return TransientUpstreamError(f"{provider} returned {status}", provider=provider, status=status)
        return PermanentUpstreamError(f"{provider} returned {status}", provider=provider, status=status)
    return PermanentUpstreamError(f"{provider} request failed: {type(error).__name__}", provider=provider)


def build_llm_providers(settings: Settings) -> List[LLMProvider]:
    """Providers in preference order: OpenRouter when configured, then OpenAI."""
    providers: List[LLMProvider] = []
    if settings.openrouter_api_key:
        providers.append(
            LLMProvider(
                name="openrouter",
                base_url=settings.openrouter_base_url.rstrip("/"),
                api_key=settings.openrouter_api_key,
                models={
                    "intent": f"openai/{settings.intent_model}",
                    "synthesis": f"openai/{settings.synthesis_model}",
                },
                extra_headers={"X-Title": "adoq"},
            )
        )
    if settings.openai_api_key:
        providers.append(
            LLMProvider(
                name="openai",
                base_url=settings.openai_base_url.rstrip("/"),
                api_key=settings.openai_api_key,
                models={"intent": settings.intent_model, "synthesis": settings.synthesis_model},
            )
        )
    return providers


class ResilientProviderClient:
    """
    Classifying, retrying client shared by the LLM and backend integrations.

    Backend calls go over one shared ``httpx.AsyncClient``. Each LLM provider
    gets an ``AsyncOpenAI`` client on top of that same connection pool, with
    the SDK's own retries disabled so the BackoffPolicy is the only retry loop.

    Usage:
        client = ResilientProviderClient(BackoffPolicy(), build_llm_providers(settings))
        completion = await client.complete(messages, purpose="intent", json_mode=True)
        await client.aclose()
    """

    def __init__(
        self,
        policy: BackoffPolicy,
        providers: Sequence[LLMProvider] = (),
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.policy = policy
        self.providers = list(providers)
        self.timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self._llm_clients: Dict[str, AsyncOpenAI] = {}

    @property
    def llm_configured(self) -> bool:
        return bool(self.providers)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _llm_client(self, provider: LLMProvider) -> AsyncOpenAI:
        client = self._llm_clients.get(provider.name)
        if client is None:
            client = AsyncOpenAI(
                api_key=provider.api_key,
                base_url=provider.base_url,
                max_retries=0,
                timeout=self.timeout,
                default_headers=provider.extra_headers or None,
                http_client=self._http,
            )
            self._llm_clients[provider.name] = client
        return client

    async def _send(self, spec: RequestSpec, deadline: Optional[Deadline]) -> httpx.Response:
        timeout = spec.timeout or self.timeout
        if deadline is not None:
            if deadline.expired:
                raise TransientUpstreamError("Request deadline exceeded", provider=spec.provider)
            timeout = min(timeout, deadline.remaining())

        try:
            response = await self._http.request(
                spec.method,
                spec.url,
                json=spec.json,
                params=spec.params,
                headers=spec.headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(f"{spec.provider} request timed out", provider=spec.provider) from e
        except httpx.TransportError as e:
            raise TransientUpstreamError(
                f"{spec.provider} connection failed: {type(e).__name__}", provider=spec.provider
            ) from e

        error = classify_response(response, spec.provider)
        if error is not None:
            raise error
        return response

    async def _create_completion(
        self, provider: LLMProvider, request: Dict[str, Any], deadline: Optional[Deadline]
    ) -> Any:
        timeout = self.timeout
        if deadline is not None:
            if deadline.expired:
                raise TransientUpstreamError("Request deadline exceeded", provider=provider.name)
            timeout = min(timeout, deadline.remaining())

        try:
            return await self._llm_client(provider).chat.completions.create(timeout=timeout, **request)
        except openai.APIError as e:
            raise classify_openai_error(e, provider.name) from e

    async def call(
        self,
        spec: RequestSpec,
        max_retries: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> httpx.Response:
        """
        Send ``spec``, retrying rate-limited and transient failures.

        Non-idempotent specs are sent exactly once.

        Raises:
            RateLimitError, TransientUpstreamError: after retries are exhausted
            PermanentUpstreamError: immediately
        """
        policy = self.policy if max_retries is None else self.policy.with_max_retries(max_retries)
        if not spec.retryable:
            policy = policy.with_max_retries(0)

        start_time = time.time()
        try:
            response = await policy.run(self._send, spec, deadline, deadline=deadline)
        except UpstreamError as e:
            logger.warning(
                "Upstream call failed",
                provider=spec.provider,
                method=spec.method,
                error_code=e.code,
                status=e.status,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            raise

        logger.debug(
            "Upstream call completed",
            provider=spec.provider,
            method=spec.method,
            status=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return response

    async def complete(
        self,
        messages: List[Dict[str, str]],
        purpose: str = "intent",
        json_mode: bool = False,
        temperature: float = 0.2,
        max_tokens: int = 1200,
        deadline: Optional[Deadline] = None,
    ) -> Completion:
        """
        Chat completion, falling back to the next provider when one fails.

        Raises:
            ConfigurationError: when no provider is configured
            UpstreamError: the last provider's error when all of them fail
        """
        if not self.providers:
            raise ConfigurationError(setting="OPENAI_API_KEY or OPENROUTER_API_KEY")

        last_error: Optional[UpstreamError] = None
        for provider in self.providers:
            model = provider.models.get(purpose) or next(iter(provider.models.values()))
            request: Dict[str, Any] = {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
            if json_mode:
                request["response_format"] = {"type": "json_object"}

            start_time = time.time()
            try:
                response = await self.policy.run(
                    self._create_completion, provider, request, deadline, deadline=deadline
                )
                choices = getattr(response, "choices", None) or []
                message = getattr(choices[0], "message", None) if choices else None
                if message is None:
                    raise PermanentUpstreamError("Completion carried no message", provider=provider.name)
            except UpstreamError as e:
                last_error = e
            else:
                usage = response.usage.model_dump() if getattr(response, "usage", None) else {}
                logger.debug(
                    "LLM completion received",
                    provider=provider.name,
                    model=model,
                    purpose=purpose,
                    duration_ms=round((time.time() - start_time) * 1000, 2),
                )
                return Completion(content=message.content or "", provider=provider.name, model=model, usage=usage)

            if deadline is not None and deadline.expired:
                break
            logger.warning(
                "LLM provider failed, trying next provider",
                provider=provider.name,
                purpose=purpose,
                error_code=last_error.code,
            )

        raise last_error
