"""
Model gateway -- one model call with retries and a fallback chain.

Primary tier: the configured primary model through the LiteLLM Responses
API. It takes input, instructions and a reasoning effort; temperature and
output-length limits are not accepted there and are dropped.

Fallback tier: an ordered list of chat-completion models with the full
legacy parameter set (temperature, max_tokens). Developer instructions
become a leading "system" message.

Retries (both tiers, configured from LLMConfig):
- Only for transient errors: rate limits (429), server errors (5xx),
  connection problems and timeouts.
- Exponential backoff: base * 2^attempt plus a small random jitter.
- Every attempt carries a per-attempt timeout.

Fallback policy:
- By default any primary-tier failure triggers the fallback chain.
- In the chain, a model-not-available error or exhausted transient retries
  move on to the next model; any other error aborts the chain.
- Exhausting the list raises NoCompatibleModelError.
"""

import os
from typing import Any, Callable, Literal

import litellm
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from ..config.schema import LLMConfig, ReasoningEffort
from ..costs.prices import PriceTable
from ..costs.usage import TokenUsage

logger = structlog.get_logger()

# Transient errors that justify retries
_RETRYABLE_ERRORS = (
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.APIConnectionError,
    litellm.Timeout,
)

# Errors that are the caller's fault rather than the provider's
_CALLER_ERRORS = (
    litellm.BadRequestError,
    litellm.AuthenticationError,
)

_MODEL_UNAVAILABLE_MARKERS = (
    "model_not_found",
    "does not exist",
    "not available",
    "not supported",
    "unknown model",
    "no such model",
    "do not have access",
)

# Canonical usage field -> provider field names, in lookup order. Dotted
# names walk nested objects. Extend by adding entries.
USAGE_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "input_tokens": ("input_tokens", "prompt_tokens"),
    "output_tokens": ("output_tokens", "completion_tokens"),
    "reasoning_tokens": (
        "reasoning_tokens",
        "output_tokens_details.reasoning_tokens",
        "completion_tokens_details.reasoning_tokens",
    ),
    "cached_tokens": (
        "cached_tokens",
        "input_tokens_details.cached_tokens",
        "prompt_tokens_details.cached_tokens",
        "cache_read_input_tokens",
    ),
}

CONNECTION_TEST_PROMPT = 'Say "OK" if you can hear me.'


class NoCompatibleModelError(Exception):
    """Every model in the fallback chain failed."""


class ModelCallRequest(BaseModel):
    """Input of one gateway call.

    input is either a single prompt or an ordered list of
    {"role", "content"} messages.
    """

    input: str | list[dict[str, Any]]
    instructions: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    reasoning_effort: ReasoningEffort | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    stream: bool = False

    model_config = {"extra": "forbid"}


class ModelCallResult(BaseModel):
    """Normalized result, whichever tier served the call."""

    text: str
    usage: TokenUsage
    model: str
    tier: Literal["primary", "fallback"]
    raw: Any = None

    model_config = {"arbitrary_types_allowed": True}


def _lookup(obj: Any, path: str) -> Any:
    """Read a dotted path from nested dicts/objects; None when absent."""
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = _lookup(exc, "response.status_code")
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_transient_error(exc: BaseException) -> bool:
    """Rate limits, server errors, connection failures and timeouts."""
    if isinstance(exc, _RETRYABLE_ERRORS):
        return True
    status = _status_code(exc)
    return status is not None and (status == 429 or 500 <= status < 600)


def is_model_unavailable_error(exc: BaseException) -> bool:
    """The model does not exist or is not available to this account."""
    if isinstance(exc, litellm.NotFoundError) or _status_code(exc) == 404:
        return True
    message = str(exc).lower()
    return "model" in message and any(m in message for m in _MODEL_UNAVAILABLE_MARKERS)


def is_caller_error(exc: BaseException) -> bool:
    """Bad request or authentication failure that is not about model availability."""
    if is_model_unavailable_error(exc):
        return False
    if isinstance(exc, _CALLER_ERRORS):
        return True
    return _status_code(exc) in (400, 401, 403, 422)


def normalize_usage(raw_usage: Any, pricing_model: str, prices: PriceTable) -> TokenUsage:
    """Map any recognized usage field naming onto TokenUsage and price it.

    Args:
        raw_usage: Provider usage object or dict (None gives zero usage)
        pricing_model: Model whose prices apply (the one that served the call)
        prices: Price table

    Returns:
        TokenUsage with the estimated cost filled in
    """
    values: dict[str, int] = {}
    for canonical, aliases in USAGE_FIELD_ALIASES.items():
        values[canonical] = 0
        for alias in aliases:
            found = _lookup(raw_usage, alias)
            if isinstance(found, (int, float)) and found:
                values[canonical] = int(found)
                break

    pricing = prices.get_prices(pricing_model)
    cost = pricing.cost(
        values["input_tokens"],
        values["output_tokens"],
        reasoning_tokens=values["reasoning_tokens"],
        cached_tokens=values["cached_tokens"],
    )
    return TokenUsage(
        input_tokens=values["input_tokens"],
        output_tokens=values["output_tokens"],
        reasoning_tokens=values["reasoning_tokens"] or None,
        cached_tokens=values["cached_tokens"],
        estimated_cost=cost,
    )


def _content_text(content: Any) -> str:
    """Flatten message content: a string, or a list of typed text parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") in ("input_text", "output_text", "text"):
                text = part.get("text") or part.get("content")
                if text:
                    texts.append(str(text))
        return "\n".join(texts)
    return ""


class ModelGateway:
    """Primary call, retry policy and fallback chain over LiteLLM."""

    def __init__(self, config: LLMConfig, prices: PriceTable | None = None) -> None:
        """Initialize the gateway with configuration.

        Args:
            config: LLM configuration
            prices: Price table used to cost each call
        """
        self.config = config
        self.prices = prices or PriceTable()
        self.log = logger.bind(component="model_gateway", model=config.model)

        self._configure_litellm()

        self.log.info(
            "gateway.initialized",
            primary=config.model,
            fallback_models=config.fallback_models,
            retries=config.retries,
            timeout=config.timeout,
        )

    def _configure_litellm(self) -> None:
        self._api_key = os.environ.get(self.config.api_key_env)
        if not self._api_key:
            self.log.warning(
                "gateway.no_api_key",
                env_var=self.config.api_key_env,
                message=f"Environment variable {self.config.api_key_env} not found",
            )
        litellm.suppress_debug_info = True

    def _provider_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": self.config.timeout}
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        if self._api_key:
            kwargs["api_key"] = self._api_key
        return kwargs

    # ------------------------------------------------------------------
    # Retry policy
    # ------------------------------------------------------------------

    def _on_retry_sleep(self, retry_state: RetryCallState) -> None:
        """Called before each retry. Logs the attempt and wait time."""
        next_wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.log.warning(
            "gateway.retry",
            attempt=retry_state.attempt_number,
            wait_seconds=round(next_wait, 2),
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    def _call_with_retry(self, fn: Callable[[], Any]) -> Any:
        """Run fn, retrying only transient errors; others propagate at once."""
        for attempt in Retrying(
            retry=retry_if_exception(is_transient_error),
            stop=stop_after_attempt(self.config.retries + 1),
            wait=(
                wait_exponential(multiplier=self.config.retry_base_delay, exp_base=2)
                + wait_random(0, self.config.retry_jitter)
            ),
            before_sleep=self._on_retry_sleep,
            reraise=True,
        ):
            with attempt:
                return fn()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def create_response(self, request: ModelCallRequest) -> ModelCallResult:
        """Execute one model call, falling back through alternate models.

        Args:
            request: Normalized call request

        Returns:
            ModelCallResult from whichever tier served the call

        Raises:
            NoCompatibleModelError: If every fallback model failed
            Exception: A non-recoverable fallback error, or a caller error from
                the primary tier when fallback_on_any_error is disabled
        """
        self.log.info(
            "gateway.call.start",
            input_kind="messages" if isinstance(request.input, list) else "prompt",
            stream=request.stream,
        )
        try:
            result = self._call_primary(request)
        except Exception as e:
            if not self.config.fallback_on_any_error and is_caller_error(e):
                self.log.error(
                    "gateway.primary.caller_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            self.log.warning(
                "gateway.primary.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            result = self._call_fallback(request)

        self.log.info(
            "gateway.call.success",
            model=result.model,
            tier=result.tier,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            cost_usd=result.usage.estimated_cost,
        )
        return result

    # ------------------------------------------------------------------
    # Primary tier (Responses API)
    # ------------------------------------------------------------------

    def _primary_input(self, request: ModelCallRequest) -> str | list[dict[str, Any]]:
        if isinstance(request.input, str):
            return request.input
        mapped = []
        for message in request.input:
            role = message.get("role")
            text = _content_text(message.get("content"))
            if not role or not text:
                continue
            part_type = "output_text" if role == "assistant" else "input_text"
            mapped.append({"role": role, "content": [{"type": part_type, "text": text}]})
        return mapped

    def _call_primary(self, request: ModelCallRequest) -> ModelCallResult:
        model = self.config.model
        kwargs: dict[str, Any] = {
            "model": model,
            "input": self._primary_input(request),
            "reasoning": {
                "effort": request.reasoning_effort or self.config.default_reasoning_effort
            },
            **self._provider_kwargs(),
        }
        if request.instructions:
            kwargs["instructions"] = request.instructions
        # temperature and max_tokens are not accepted by the primary model family

        if request.stream:
            text, raw_usage = self._call_with_retry(
                lambda: self._collect_primary_stream(litellm.responses(stream=True, **kwargs))
            )
            return ModelCallResult(
                text=text,
                usage=normalize_usage(raw_usage, model, self.prices),
                model=model,
                tier="primary",
                raw={"streamed": True, "model": model},
            )

        response = self._call_with_retry(lambda: litellm.responses(**kwargs))
        text = _lookup(response, "output_text")
        if not isinstance(text, str) or not text:
            text = self._extract_output_text(_lookup(response, "output"))
        return ModelCallResult(
            text=text,
            usage=normalize_usage(_lookup(response, "usage"), model, self.prices),
            model=model,
            tier="primary",
            raw=response,
        )

    @staticmethod
    def _collect_primary_stream(stream: Any) -> tuple[str, Any]:
        """Aggregate a Responses API event stream into (text, usage or None)."""
        chunks: list[str] = []
        usage = None
        for event in stream:
            event_type = str(_lookup(event, "type") or "")
            if event_type.endswith("output_text.delta"):
                delta = _lookup(event, "delta")
                if delta:
                    chunks.append(str(delta))
            elif event_type.endswith("completed"):
                usage = _lookup(event, "response.usage") or usage
        return "".join(chunks), usage

    @staticmethod
    def _extract_output_text(output: Any) -> str:
        """Join the text parts of Responses API output items."""
        if not isinstance(output, list):
            return ""
        texts: list[str] = []
        for item in output:
            if _lookup(item, "type") != "message":
                continue
            for part in _lookup(item, "content") or []:
                if _lookup(part, "type") in ("output_text", "text"):
                    texts.append(str(_lookup(part, "text") or ""))
        return "\n".join(texts)

    # ------------------------------------------------------------------
    # Fallback tier (chat completions)
    # ------------------------------------------------------------------

    def _fallback_messages(self, request: ModelCallRequest) -> list[dict[str, str]]:
        system_parts: list[str] = []
        if request.instructions:
            system_parts.append(request.instructions)

        messages: list[dict[str, str]] = []
        if isinstance(request.input, str):
            messages.append({"role": "user", "content": request.input})
        else:
            for message in request.input:
                role = message.get("role")
                text = _content_text(message.get("content"))
                if not role or not text:
                    continue
                if role in ("developer", "system"):
                    system_parts.append(text)
                else:
                    messages.append({"role": role, "content": text})

        if system_parts:
            messages.insert(0, {"role": "system", "content": "\n\n".join(system_parts)})
        return messages

    def _call_fallback(self, request: ModelCallRequest) -> ModelCallResult:
        messages = self._fallback_messages(request)
        temperature = (
            request.temperature
            if request.temperature is not None
            else self.config.default_temperature
        )
        max_tokens = request.max_tokens or self.config.fallback_max_tokens
        last_error: Exception | None = None

        self.log.warning(
            "gateway.fallback.start",
            models=self.config.fallback_models,
            messages_count=len(messages),
        )

        for model in self.config.fallback_models:
            kwargs: dict[str, Any] = {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                **self._provider_kwargs(),
            }
            try:
                if request.stream:
                    kwargs["stream"] = True
                    kwargs["stream_options"] = {"include_usage": True}
                    text, raw_usage = self._call_with_retry(
                        lambda: self._collect_chat_stream(litellm.completion(**kwargs))
                    )
                    raw: Any = {"streamed": True, "model": model}
                else:
                    response = self._call_with_retry(lambda: litellm.completion(**kwargs))
                    text = self._chat_text(response)
                    raw_usage = _lookup(response, "usage")
                    raw = response
            except Exception as e:
                last_error = e
                if is_model_unavailable_error(e):
                    self.log.warning("gateway.fallback.model_unavailable", fallback_model=model)
                    continue
                if is_transient_error(e):
                    self.log.warning(
                        "gateway.fallback.transient_exhausted",
                        fallback_model=model,
                        error=str(e),
                    )
                    continue
                self.log.error(
                    "gateway.fallback.error",
                    fallback_model=model,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            return ModelCallResult(
                text=text,
                usage=normalize_usage(raw_usage, model, self.prices),
                model=model,
                tier="fallback",
                raw=raw,
            )

        self.log.error("gateway.fallback.exhausted", models=self.config.fallback_models)
        raise NoCompatibleModelError("No compatible model available") from last_error

    @staticmethod
    def _chat_text(response: Any) -> str:
        choices = _lookup(response, "choices") or []
        if not choices:
            return ""
        return _lookup(choices[0], "message.content") or ""

    @staticmethod
    def _collect_chat_stream(stream: Any) -> tuple[str, Any]:
        """Aggregate a chat-completion stream into (text, usage or None)."""
        chunks: list[str] = []
        usage = None
        for chunk in stream:
            choices = _lookup(chunk, "choices") or []
            if choices:
                content = _lookup(choices[0], "delta.content")
                if content:
                    chunks.append(str(content))
            usage = _lookup(chunk, "usage") or usage
        return "".join(chunks), usage

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def test_connection(self) -> bool:
        """Send a trivial prompt and check that text comes back.

        Failures are logged as warnings and reported as False, never raised.
        """
        try:
            result = self.create_response(ModelCallRequest(input=CONNECTION_TEST_PROMPT))
        except Exception as e:
            self.log.warning(
                "gateway.connection_test.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        ok = len(result.text.strip()) > 0
        if not ok:
            self.log.warning("gateway.connection_test.empty_response", model=result.model)
        return ok

    def __repr__(self) -> str:
        return f"<ModelGateway(model='{self.config.model}', fallbacks={len(self.config.fallback_models)})>"
