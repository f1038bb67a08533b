"""LLM provider adapters.

Three providers behind one ``call_llm(provider, api_key, prompt, ...)`` contract:
- claude: Anthropic SDK
- gpt: OpenAI SDK
- gemini: Google GenAI SDK

SDKs are imported lazily so only the selected provider needs to be installed
and configured. Errors are classified into ProviderError kinds; network and
5xx failures are retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .errors import ErrorKind, ProviderError
from .models.types import SessionOptions

logger = logging.getLogger(__name__)

# Default models per provider
_DEFAULT_MODELS: dict[str, str] = {
    "claude": "claude-3-5-sonnet-latest",
    "gpt": "gpt-4o-mini",
    "gemini": "gemini-1.5-flash",
}

PROVIDERS = tuple(_DEFAULT_MODELS)

PROBE_PROMPT = "Reply with the single word: ok"

LLMFn = Callable[[str], Awaitable[str]]


def default_model(provider: str) -> str:
    return _DEFAULT_MODELS.get(provider, "")


def validate_api_key_format(provider: str, api_key: str | None) -> bool:
    """Cheap offline shape check before spending a request on the key."""
    if not api_key:
        return False
    if provider == "claude":
        return api_key.startswith("sk-ant-") and len(api_key) > 20
    if provider == "gpt":
        return api_key.startswith("sk-") and len(api_key) > 20
    if provider == "gemini":
        return len(api_key) >= 30 and " " not in api_key
    return False


def classify_error(provider: str, exc: BaseException) -> ProviderError:
    """Map an SDK or transport exception onto the error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(getattr(exc, "code", None), int):
        status = exc.code  # google.genai APIError
    name = type(exc).__name__
    message = str(exc) or name

    if status in (401, 403) or "Authentication" in name or "PermissionDenied" in name:
        kind = ErrorKind.UPSTREAM_AUTH
    elif status == 429 or "RateLimit" in name:
        kind = ErrorKind.UPSTREAM_RATE_LIMIT
    elif (isinstance(status, int) and status >= 500) or "InternalServer" in name:
        kind = ErrorKind.UPSTREAM_SERVER
    elif "Connection" in name or "Timeout" in name or isinstance(exc, ConnectionError | OSError):
        kind = ErrorKind.NETWORK
    elif status in (400, 404, 422):
        kind = ErrorKind.INVALID_INPUT
    else:
        kind = ErrorKind.INTERNAL
    return ProviderError(provider, message, kind, status_code=status)


async def _call_claude(
    api_key: str,
    prompt: str,
    model: str,
    max_tokens: int,
    temperature: float,
    system_prompt: str | None,
) -> str:
    from anthropic import AsyncAnthropic

    client = AsyncAnthropic(api_key=api_key, max_retries=0)
    kwargs = {}
    if system_prompt:
        kwargs["system"] = system_prompt
    resp = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[{"role": "user", "content": prompt}],
        **kwargs,
    )
    return "".join(
        block.text for block in resp.content if getattr(block, "type", "text") == "text"
    )


async def _call_gpt(
    api_key: str,
    prompt: str,
    model: str,
    max_tokens: int,
    temperature: float,
    system_prompt: str | None,
) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key, max_retries=0)
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    resp = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=messages,
    )
    return resp.choices[0].message.content or ""


async def _call_gemini(
    api_key: str,
    prompt: str,
    model: str,
    max_tokens: int,
    temperature: float,
    system_prompt: str | None,
) -> str:
    from google import genai
    from google.genai import types

    client = genai.Client(api_key=api_key)
    resp = await client.aio.models.generate_content(
        model=model,
        contents=prompt,
        config=types.GenerateContentConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
            system_instruction=system_prompt or None,
        ),
    )
    return resp.text or ""


_CALLERS = {
    "claude": _call_claude,
    "gpt": _call_gpt,
    "gemini": _call_gemini,
}


async def call_llm(
    provider: str,
    api_key: str | None,
    prompt: str,
    *,
    model: str | None = None,
    max_tokens: int = 4096,
    temperature: float = 0.7,
    timeout_ms: int = 30_000,
    max_retries: int = 3,
    system_prompt: str | None = None,
) -> str:
    """Send one prompt and return the plaintext reply.

    UpstreamServer and Network failures are retried up to ``max_retries``
    times with a 2**attempt second backoff; everything else raises at once.
    """
    caller = _CALLERS.get(provider)
    if caller is None:
        raise ProviderError(provider, f"Unknown provider: {provider}", ErrorKind.INVALID_INPUT)
    if not api_key:
        raise ProviderError(
            provider,
            f"No API key configured (set {provider.upper()}_API_KEY or use --api-key)",
            ErrorKind.UPSTREAM_AUTH,
        )

    resolved_model = model or _DEFAULT_MODELS[provider]
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(
                caller(api_key, prompt, resolved_model, max_tokens, temperature, system_prompt),
                timeout_ms / 1000,
            )
        except TimeoutError:
            error = ProviderError(
                provider, f"Request timed out after {timeout_ms} ms", ErrorKind.TIMEOUT
            )
        except Exception as e:
            error = classify_error(provider, e)

        if not error.kind.retryable or attempt >= max_retries:
            raise error
        delay = 2**attempt
        attempt += 1
        logger.warning(
            "%s request failed (%s), retry %d/%d in %ds",
            provider, error.kind, attempt, max_retries, delay,
        )
        await asyncio.sleep(delay)


async def probe_api_key(provider: str, api_key: str | None, model: str | None = None) -> bool:
    """Format check, then a one-line probe request."""
    if not validate_api_key_format(provider, api_key):
        return False
    try:
        await call_llm(
            provider, api_key, PROBE_PROMPT, model=model, max_tokens=10, max_retries=0,
        )
    except ProviderError as e:
        logger.info("API key probe for %s failed: %s", provider, e)
        return False
    return True


def create_llm_fn(options: SessionOptions) -> LLMFn:
    """Bind session options into a ``prompt -> reply`` coroutine function."""

    async def _call(prompt: str) -> str:
        return await call_llm(
            options.provider,
            options.api_key,
            prompt,
            model=options.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            timeout_ms=options.timeout,
            max_retries=options.max_retries,
        )

    return _call
