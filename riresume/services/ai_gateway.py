"""
AI Provider Gateway - completion requests with retry and fallback.

Pure request/response boundary: no state is kept between calls.

Policy:
1. Call the primary provider
2. On HTTP 429, retry with exponential backoff (2s, 4s, 8s by default)
3. On any other failure, or once retries are exhausted, replay on the secondary
4. If that fails too (or there is no secondary), raise UpstreamProviderError
"""

import asyncio
import json
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
from structlog import get_logger

from riresume.exceptions import ProviderCallError, RateLimitedError, UpstreamProviderError
from riresume.models.domain import CompletionRequest, CompletionResult
from riresume.observability.metrics import metrics
from riresume.observability.tracing import trace_operation

logger = get_logger(__name__)

_CODE_FENCE_OPEN = re.compile(r"```json\s*", re.IGNORECASE)
_CODE_FENCE = re.compile(r"```\s*")


class AIProvider(Protocol):
    """
    AI provider protocol.

    Implementations raise RateLimitedError on rate limiting and
    ProviderCallError on every other failure.
    """

    name: str

    async def complete(self, request: CompletionRequest) -> str:
        """Return the raw completion text."""
        ...


class ChatCompletionsProvider:
    """
    OpenAI-compatible chat completions provider over httpx.

    Used for both OpenAI and Perplexity, which share the wire format.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        model: str,
        supports_json_mode: bool = True,
        timeout_seconds: float = 90.0,
        default_max_output_tokens: int = 4000,
        temperature: float = 0.5,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.supports_json_mode = supports_json_mode
        self.timeout_seconds = timeout_seconds
        self.default_max_output_tokens = default_max_output_tokens
        self.temperature = temperature
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def build_body(self, request: CompletionRequest) -> dict[str, Any]:
        """Build the chat completions request body."""
        user_content = request.user_content
        if request.structured and not self.supports_json_mode:
            user_content += "\n\nIMPORTANT: Return ONLY valid JSON."

        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": request.system_instruction},
                {"role": "user", "content": user_content},
            ],
            "temperature": self.temperature,
            "max_tokens": request.max_output_tokens or self.default_max_output_tokens,
        }
        if request.structured and self.supports_json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    async def complete(self, request: CompletionRequest) -> str:
        """
        Issue one chat completion call.

        Raises:
            RateLimitedError: HTTP 429
            ProviderCallError: transport error, other HTTP error, or empty content
        """
        try:
            response = await self.http_client.post(
                f"{self.base_url}/chat/completions",
                json=self.build_body(request),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ProviderCallError(self.name, f"timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderCallError(self.name, f"transport error: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError(self.name, response.text[:200] or "rate limited")
        if response.status_code >= 400:
            raise ProviderCallError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderCallError(self.name, f"unexpected response shape: {exc}") from exc

        if not content or not str(content).strip():
            raise ProviderCallError(self.name, "no content in response")
        return str(content).strip()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


def parse_structured(provider: str, text: str) -> dict[str, Any]:
    """
    Parse a structured (JSON object) completion, tolerating markdown fences.

    Raises:
        ProviderCallError: body is not a JSON object
    """
    cleaned = _CODE_FENCE.sub("", _CODE_FENCE_OPEN.sub("", text)).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ProviderCallError(provider, f"malformed JSON response: {exc}") from exc
    if not isinstance(data, dict):
        raise ProviderCallError(provider, "structured response is not a JSON object")
    return data


class AIProviderGateway:
    """
    Completion gateway with rate-limit retry on the primary and one fallback replay.
    """

    def __init__(
        self,
        primary: AIProvider,
        secondary: AIProvider | None = None,
        max_rate_limit_retries: int = 3,
        base_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.max_rate_limit_retries = max_rate_limit_retries
        self.base_delay_seconds = base_delay_seconds
        self._sleep = sleep

    def backoff_delays(self) -> list[float]:
        """Delays slept between rate-limited primary attempts."""
        return [self.base_delay_seconds * (2**i) for i in range(self.max_rate_limit_retries)]

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """
        Complete a request, returning text or parsed JSON in structured mode.

        Raises:
            UpstreamProviderError: primary and fallback both failed
        """
        with trace_operation(
            "ai_gateway.complete",
            primary=self.primary.name,
            structured=request.structured,
        ):
            try:
                return await self._complete_with_retry(self.primary, request)
            except ProviderCallError as primary_error:
                primary_rate_limited = isinstance(primary_error, RateLimitedError)
                if self.secondary is None:
                    logger.error(
                        "ai_gateway_exhausted",
                        provider=self.primary.name,
                        error=str(primary_error),
                        rate_limited=primary_rate_limited,
                    )
                    raise UpstreamProviderError(
                        str(primary_error), last_error=primary_error
                    ) from primary_error

                logger.warning(
                    "ai_gateway_fallback",
                    primary=self.primary.name,
                    secondary=self.secondary.name,
                    error=str(primary_error),
                )

            try:
                return await self._complete_once(self.secondary, request)
            except ProviderCallError as secondary_error:
                logger.error(
                    "ai_gateway_fallback_failed",
                    provider=self.secondary.name,
                    error=str(secondary_error),
                )
                raise UpstreamProviderError(
                    str(secondary_error),
                    last_error=secondary_error,
                    rate_limited=primary_rate_limited
                    or isinstance(secondary_error, RateLimitedError),
                ) from secondary_error

    async def _complete_with_retry(
        self, provider: AIProvider, request: CompletionRequest
    ) -> CompletionResult:
        """Call a provider, retrying only on rate limiting."""
        delays = self.backoff_delays()
        attempt = 0
        while True:
            try:
                return await self._complete_once(provider, request)
            except RateLimitedError:
                if attempt >= len(delays):
                    raise
                delay = delays[attempt]
                attempt += 1
                logger.warning(
                    "ai_provider_rate_limited",
                    provider=provider.name,
                    attempt=attempt,
                    retry_in_seconds=delay,
                )
                await self._sleep(delay)

    async def _complete_once(
        self, provider: AIProvider, request: CompletionRequest
    ) -> CompletionResult:
        """One provider call plus structured parsing, with metrics."""
        start = time.monotonic()
        try:
            text = await provider.complete(request)
            data = parse_structured(provider.name, text) if request.structured else None
        except RateLimitedError:
            metrics.record_ai_call(provider.name, "rate_limited", time.monotonic() - start)
            raise
        except ProviderCallError:
            metrics.record_ai_call(provider.name, "error", time.monotonic() - start)
            raise

        metrics.record_ai_call(provider.name, "success", time.monotonic() - start)
        return CompletionResult(provider=provider.name, text=text, data=data)


def build_gateway_from_settings(http_client: httpx.AsyncClient | None = None) -> AIProviderGateway:
    """Build the production gateway: OpenAI primary, Perplexity fallback when keyed."""
    from riresume.config import settings

    primary = ChatCompletionsProvider(
        name="openai",
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        supports_json_mode=True,
        timeout_seconds=settings.ai_http_timeout_seconds,
        default_max_output_tokens=settings.ai_default_max_output_tokens,
        temperature=settings.ai_temperature,
        http_client=http_client,
    )
    secondary = None
    if settings.perplexity_api_key:
        secondary = ChatCompletionsProvider(
            name="perplexity",
            base_url=settings.perplexity_base_url,
            api_key=settings.perplexity_api_key,
            model=settings.perplexity_model,
            supports_json_mode=False,
            timeout_seconds=settings.ai_http_timeout_seconds,
            default_max_output_tokens=settings.ai_default_max_output_tokens,
            temperature=0.3,
            http_client=http_client,
        )

    return AIProviderGateway(
        primary=primary,
        secondary=secondary,
        max_rate_limit_retries=settings.ai_max_rate_limit_retries,
        base_delay_seconds=settings.ai_retry_base_delay_seconds,
    )
