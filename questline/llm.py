"""Generation backend client - streams scene text from a completion API.

The engine consumes any object matching the protocol:

    def stream(self, messages: list[dict[str, str]]) -> AsyncIterator[str]: ...

`messages` is a chat transcript ({"role": ..., "content": ...}). The
iterator yields raw text fragments and simply ends when the backend signals
completion. Everything it yields is treated as untrusted text and goes
through the scene parser.

Two implementations are provided:

    HttpGenerator     - real HTTP client. "openai" format streams chat
                        completions over SSE; "koboldcpp" format returns the
                        whole completion as one fragment.
    ScriptedGenerator - replays canned responses in small fragments. No
                        network; useful for offline runs and wiring checks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from collections.abc import AsyncIterator
from typing import Literal, Protocol

import httpx

from questline.config import EngineConfig

logger = logging.getLogger(__name__)

Message = dict[str, str]


# ---------------------------------------------------------------------------
# Protocol - every generator implementation must match this signature
# ---------------------------------------------------------------------------

class StoryGenerator(Protocol):
    def stream(self, messages: list[Message]) -> AsyncIterator[str]: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GenerationError(RuntimeError):
    """Raised when the backend cannot be reached or returns an error."""


class RateLimitError(GenerationError):
    """Raised before sending when the client-side request budget is spent."""


# ---------------------------------------------------------------------------
# Rate limiting and backoff
# ---------------------------------------------------------------------------

class RateLimiter:
    """Sliding-window request budget (max_requests per window seconds)."""

    def __init__(self, max_requests: int = 3, window: float = 60.0, clock=time.monotonic) -> None:
        self._max_requests = max_requests
        self._window = window
        self._clock = clock
        self._requests: deque[float] = deque()

    def check(self) -> None:
        now = self._clock()
        while self._requests and now - self._requests[0] >= self._window:
            self._requests.popleft()
        if len(self._requests) >= self._max_requests:
            raise RateLimitError("Rate limit exceeded. Please try again later.")
        self._requests.append(now)


def retry_delay(error: Exception | None, attempt: int, base: float = 2.0) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based).

    Honours Retry-After on HTTP 429, otherwise exponential backoff.
    """
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        try:
            retry_after = int(error.response.headers.get("retry-after", "0"))
        except ValueError:
            retry_after = 0
        if retry_after > 0:
            return float(retry_after)
    return base * 2 ** (attempt - 1)


# ---------------------------------------------------------------------------
# HttpGenerator - connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "koboldcpp"]

_DONE = object()


class HttpGenerator:
    """Async HTTP client for completion backends.

    Supported formats:
      "openai"     - POST /v1/chat/completions  {"model", "messages", "stream": true}
                     Response: SSE lines  data: {"choices": [{"delta": {"content": "..."}}]}
                     terminated by  data: [DONE]
      "koboldcpp"  - POST /api/v1/generate  {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}

    Connection errors, timeouts, HTTP 429 and 5xx are retried with backoff,
    but only until the first fragment has been yielded; after that a
    failure is raised so the caller never sees duplicated text.

    Args:
        provider_url:     Base URL, e.g. "https://api.openai.com".
        api_key:          Bearer token, or empty string if not required.
        provider_format:  Wire format. Defaults to "openai".
        timeout:          HTTP timeout in seconds.
        max_attempts:     Total tries per request.
        rate_limiter:     Shared RateLimiter; a private one if omitted.
        transport:        Optional httpx transport (tests inject a mock).
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "gpt-4",
        temperature: float = 0.8,
        max_tokens: int = 1000,
        presence_penalty: float = 0.6,
        frequency_penalty: float = 0.3,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._presence_penalty = presence_penalty
        self._frequency_penalty = frequency_penalty
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._rate_limiter = rate_limiter or RateLimiter()
        self._transport = transport

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs) -> HttpGenerator:
        return cls(
            provider_url=config.provider_url,
            api_key=config.api_key,
            provider_format=config.provider_format,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            presence_penalty=config.presence_penalty,
            frequency_penalty=config.frequency_penalty,
            timeout=config.generation_timeout,
            max_attempts=config.generation_retries,
            rate_limiter=RateLimiter(config.rate_limit_requests, config.rate_limit_window),
            **kwargs,
        )

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, messages: list[Message]) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "koboldcpp":
            prompt = "\n\n".join(m["content"] for m in messages)
            return f"{self._base_url}/api/v1/generate", {
                "prompt": prompt,
                "max_length": self._max_tokens,
                "temperature": self._temperature,
            }

        # openai (default)
        return f"{self._base_url}/v1/chat/completions", {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "presence_penalty": self._presence_penalty,
            "frequency_penalty": self._frequency_penalty,
            "stream": True,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @staticmethod
    def _parse_sse_line(line: str):
        """Return the text delta of one SSE line, _DONE, or None to skip."""
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return _DONE
        try:
            payload = json.loads(data)
            return payload["choices"][0].get("delta", {}).get("content")
        except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
            logger.debug("Skipping unparseable stream line: %r", line)
            return None

    @staticmethod
    def _parse_kobold(data: dict) -> str:
        results = data.get("results") if isinstance(data, dict) else None
        if not results or "text" not in results[0]:
            raise GenerationError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def _fragments(self, url: str, body: dict) -> AsyncIterator[str]:
        async with self._client() as client:
            if self._format == "koboldcpp":
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
                yield self._parse_kobold(resp.json())
                return

            async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    token = self._parse_sse_line(line)
                    if token is _DONE:
                        return
                    if token:
                        yield token

    async def stream(self, messages: list[Message]) -> AsyncIterator[str]:
        self._rate_limiter.check()
        url, body = self._build_request(messages)
        logger.debug("generation request url=%s messages=%d", url, len(messages))

        attempt = 0
        while True:
            attempt += 1
            delivered = 0
            try:
                async for fragment in self._fragments(url, body):
                    delivered += 1
                    yield fragment
                logger.debug("generation finished fragments=%d", delivered)
                return
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                error: Exception = e
                message = f"Generation backend returned HTTP {status}"
                retryable = status == 429 or status >= 500
            except httpx.ConnectError as e:
                error = e
                message = f"Cannot connect to generation backend at {self._base_url}"
                retryable = True
            except httpx.TimeoutException as e:
                error = e
                message = f"Generation backend timed out after {self._timeout}s"
                retryable = True
            except httpx.TransportError as e:
                error = e
                message = f"Connection to generation backend failed: {type(e).__name__}"
                retryable = True
            except ValueError as e:
                error = e
                message = "Generation backend sent a response that is not valid JSON"
                retryable = False

            if delivered or not retryable or attempt >= self._max_attempts:
                raise GenerationError(message) from error
            delay = retry_delay(error, attempt, self._retry_base_delay)
            logger.warning("%s (attempt %d/%d), retrying in %.1fs", message, attempt, self._max_attempts, delay)
            await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# ScriptedGenerator - canned responses, no network
# ---------------------------------------------------------------------------

class ScriptedGenerator:
    """Replays canned responses, one per stream() call, in small fragments.

    The last response repeats once the script runs out. Lets you drive the
    whole narrative loop (parsing, commit, save) without a running model.
    """

    def __init__(self, responses: list[str], fragment_size: int = 16) -> None:
        if not responses:
            raise ValueError("ScriptedGenerator needs at least one response")
        self._responses = list(responses)
        self._fragment_size = fragment_size
        self.calls: list[list[Message]] = []

    async def stream(self, messages: list[Message]) -> AsyncIterator[str]:
        self.calls.append(messages)
        text = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        for i in range(0, len(text), self._fragment_size):
            yield text[i:i + self._fragment_size]
            await asyncio.sleep(0)
