"""Upstream adapter for the Gemini text-generation REST API.

Provides a buffered call (``generateContent``) and an incremental one
(``streamGenerateContent`` over server-sent events), plus a single
normalization function that extracts text from whatever response shape
the upstream returns.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from mystara_gateway.config import UpstreamConfig


class UpstreamError(Exception):
    """Raised when the generation provider fails or cannot be reached."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class MalformedUpstreamResponse(UpstreamError):
    """Raised when no text can be extracted from an upstream response."""


class TextSource(str, Enum):
    """Which response shape the text was extracted from."""

    VALUE = "value"
    ACCESSOR = "accessor"
    CANDIDATES = "candidates"


@dataclass(frozen=True)
class ExtractedText:
    """Text pulled out of an upstream response, tagged with its source."""

    text: str
    source: TextSource


def _field(obj: Any, name: str) -> Any:
    """Read a key from a mapping or an attribute from an object."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _candidate_text(raw: Any) -> Optional[str]:
    candidates = _field(raw, "candidates")
    if not candidates:
        return None
    try:
        first = candidates[0]
    except (IndexError, KeyError, TypeError):
        return None
    content = _field(first, "content")
    parts = _field(content, "parts") if content is not None else None
    if not parts:
        return None
    texts: List[str] = []
    for part in parts:
        text = _field(part, "text")
        if isinstance(text, str):
            texts.append(text)
    if not texts:
        return None
    return "".join(texts)


def extract_text(raw: Any) -> ExtractedText:
    """Normalize an upstream response to its text.

    Shapes are tried in a fixed order:

    1. a ``text`` value that is already a string
    2. a callable ``text()`` accessor returning a string
    3. ``candidates[0].content.parts[*].text``, concatenated

    Both mappings and attribute-style objects are accepted at every level.

    Raises:
        MalformedUpstreamResponse: If none of the shapes yields text.
    """
    if raw is None:
        raise MalformedUpstreamResponse("Upstream returned an empty response.")

    text = _field(raw, "text")
    if isinstance(text, str):
        return ExtractedText(text=text, source=TextSource.VALUE)

    if callable(text):
        try:
            value = text()
        except (ValueError, AttributeError, TypeError, IndexError):
            value = None
        if isinstance(value, str):
            return ExtractedText(text=value, source=TextSource.ACCESSOR)

    nested = _candidate_text(raw)
    if nested is not None:
        return ExtractedText(text=nested, source=TextSource.CANDIDATES)

    raise MalformedUpstreamResponse(
        "No text found in upstream response of type {}.".format(type(raw).__name__)
    )


def _has_text(chunk: Dict[str, Any]) -> bool:
    """True if a streamed payload carries text in any known shape."""
    if isinstance(chunk.get("text"), str):
        return True
    return _candidate_text(chunk) is not None


class GeminiClient:
    """Async client for the Gemini REST API.

    The API key is resolved from the environment on every call, so a missing
    key surfaces per request rather than at startup.
    """

    supports_streaming = True

    def __init__(
        self,
        config: UpstreamConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport

    def ensure_configured(self) -> None:
        """Raise ConfigurationError if the API key is missing."""
        self._config.require_api_key()

    def _url(self, method: str) -> str:
        return "{}/models/{}:{}".format(
            self._config.base_url.rstrip("/"), self._config.model, method
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._config.require_api_key(),
            "Content-Type": "application/json",
        }

    def _payload(self, prompt: str) -> Dict[str, Any]:
        cfg = self._config
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": cfg.max_output_tokens,
                "temperature": cfg.temperature,
                "topP": cfg.top_p,
                "topK": cfg.top_k,
            },
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._config.timeout_seconds, transport=self._transport
        )

    async def generate(self, prompt: str) -> Dict[str, Any]:
        """Call the model once and return the decoded JSON response.

        Raises:
            ConfigurationError: If the API key is not set.
            UpstreamError: On transport failures or non-2xx responses.
            MalformedUpstreamResponse: If the body is not valid JSON.
        """
        headers = self._headers()
        try:
            async with self._client() as client:
                resp = await client.post(
                    self._url("generateContent"),
                    json=self._payload(prompt),
                    headers=headers,
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                "Upstream returned HTTP {}".format(exc.response.status_code)
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError("Failed to reach upstream: {}".format(exc)) from exc

        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("Upstream body is not JSON.") from exc

    async def stream(self, prompt: str) -> AsyncIterator[Dict[str, Any]]:
        """Call the model incrementally, yielding each decoded SSE payload.

        Payloads without text (trailing usage records, or a final
        candidate carrying only a role and finish reason) are skipped.
        """
        headers = self._headers()
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self._url("streamGenerateContent"),
                    params={"alt": "sse"},
                    json=self._payload(prompt),
                    headers=headers,
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if not data:
                            continue
                        try:
                            chunk = json.loads(data)
                        except ValueError as exc:
                            raise MalformedUpstreamResponse(
                                "Upstream stream event is not JSON."
                            ) from exc
                        if isinstance(chunk, dict) and _has_text(chunk):
                            yield chunk
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                "Upstream returned HTTP {}".format(exc.response.status_code)
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError("Failed to reach upstream: {}".format(exc)) from exc
