from __future__ import annotations

import base64
import json
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from statement_intake.core.config import Settings, settings
from statement_intake.core.logging import get_logger, log_event, monotonic_ms
from statement_intake.modules.extraction.errors import (
    CapabilityConfigurationError,
    CapabilityError,
    CapabilityTimeout,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class DocumentPart:
    data: bytes
    mime_type: str = "application/pdf"
    filename: str = "document.pdf"


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    mime_type: str = "image/jpeg"


Part = TextPart | DocumentPart | ImagePart


class ExtractionCapability:
    """The reasoning capability used for classification and extraction.

    `generate` returns the raw text the model produced. Implementations raise
    CapabilityConfigurationError when credentials are missing or rejected,
    CapabilityTimeout when the call exceeds `timeout`, and CapabilityError for every
    other transport or provider failure.
    """

    def ensure_configured(self) -> None:
        return None

    def generate(
        self, parts: Sequence[Part], *, timeout: float | None = None
    ) -> str:  # pragma: no cover
        raise NotImplementedError


def _data_url(mime_type: str, data: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _part_payload(part: Part) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": _data_url(part.mime_type, part.data)}}
    return {
        "type": "file",
        "file": {"filename": part.filename, "file_data": _data_url(part.mime_type, part.data)},
    }


def _message_text(message: Any) -> str:
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = [
            str(c.get("text") or "")
            for c in content
            if isinstance(c, dict) and c.get("type") in {"text", "output_text"}
        ]
        return "".join(chunks)
    return ""


class HttpExtractionCapability(ExtractionCapability):
    """OpenAI-compatible `/chat/completions` client."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        model: str,
        max_tokens: int = 4096,
        default_timeout: float = 60.0,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api_key = api_key
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._model = model
        self._max_tokens = max_tokens
        self._default_timeout = default_timeout
        self._client = client
        self._clock = clock

    def ensure_configured(self) -> None:
        if not (self._api_key or "").strip():
            raise CapabilityConfigurationError("AI_API_KEY is not configured")

    def _post(self, payload: dict[str, Any], *, timeout: float) -> tuple[int, bytes]:
        """Send the request and read the body within one overall deadline.

        httpx timeouts bound each network operation, so a slow trickle of bytes
        could otherwise outlive `timeout`.
        """
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        deadline = self._clock() + timeout
        client = self._client or httpx.Client(follow_redirects=True)
        try:
            with client.stream(
                "POST",
                self._url,
                headers=headers,
                json=payload,
                timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            ) as resp:
                body = bytearray()
                for chunk in resp.iter_bytes():
                    body.extend(chunk)
                    if self._clock() > deadline:
                        raise httpx.ReadTimeout("overall deadline exceeded")
                if self._clock() > deadline:
                    raise httpx.ReadTimeout("overall deadline exceeded")
                return resp.status_code, bytes(body)
        finally:
            if self._client is None:
                client.close()

    def generate(self, parts: Sequence[Part], *, timeout: float | None = None) -> str:
        self.ensure_configured()
        effective_timeout = float(timeout or self._default_timeout)
        payload = {
            "model": self._model,
            "temperature": 0,
            "max_tokens": self._max_tokens,
            "messages": [{"role": "user", "content": [_part_payload(p) for p in parts]}],
        }

        start = time.monotonic()
        try:
            status_code, body = self._post(payload, timeout=effective_timeout)
        except httpx.TimeoutException as e:
            log_event(
                logger,
                "capability.generate.timeout",
                timeout_s=effective_timeout,
                duration_ms=monotonic_ms(start),
            )
            raise CapabilityTimeout(
                f"AI request timed out after {effective_timeout:g}s"
            ) from e
        except httpx.HTTPError as e:
            raise CapabilityError(f"AI request failed: {type(e).__name__}") from e

        if status_code in {401, 403}:
            raise CapabilityConfigurationError(
                f"AI provider rejected credentials (HTTP {status_code})"
            )
        if status_code >= 400:
            raise CapabilityError(f"AI provider returned HTTP {status_code}")

        try:
            raw = json.loads(body)
            message = raw["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CapabilityError("AI provider returned an unreadable response") from e
        if isinstance(message, dict) and message.get("refusal"):
            raise CapabilityError("AI provider refused the request")

        text = _message_text(message)
        log_event(
            logger,
            "capability.generate.success",
            model=self._model,
            part_count=len(parts),
            response_chars=len(text),
            duration_ms=monotonic_ms(start),
        )
        return text


def build_capability(config: Settings | None = None) -> ExtractionCapability:
    cfg = config or settings
    return HttpExtractionCapability(
        api_key=cfg.ai_api_key,
        base_url=cfg.ai_base_url,
        model=cfg.ai_model,
        max_tokens=int(cfg.ai_max_tokens),
        default_timeout=float(cfg.ai_request_timeout_seconds),
    )
