"""
Resilient client for the generative-inference service.

Every stage of a practice session (notes, topics, quiz, grading) goes
through ``InferenceClient.invoke``:

1. the request is sent with the Anthropic async SDK (SDK retries disabled),
2. rate-limit failures are retried with exponential backoff,
3. the reply text is decoded and validated against a pydantic schema.

Anything that comes back from ``invoke`` is therefore structurally valid;
anything else surfaces as an ``InferenceError`` subclass.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import anthropic
from pydantic import BaseModel, ValidationError

from examecho.errors import (
    InferenceServiceError,
    MalformedResponseError,
    RateLimitedError,
)
from examecho.models import DocumentSource, SynthesizedSource

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_DECODER = json.JSONDecoder()
_STATUS_429_RE = re.compile(r"\b429\b")

Sleep = Callable[[float], Awaitable[None]]


# ── Request type ───────────────────────────────────────────────────────────


@dataclass
class InferenceRequest:
    """One logical request to the service."""

    stage: str
    model: str
    system: str
    content: list[dict[str, Any]]
    max_tokens: int = 1024
    #: JSON schema for structured output; ``None`` for free-text stages.
    output_schema: dict | None = None

    @property
    def expects_json(self) -> bool:
        return self.output_schema is not None


# ── Payload shaping ────────────────────────────────────────────────────────


def source_blocks(source: DocumentSource | SynthesizedSource) -> list[dict[str, Any]]:
    """Return the message content blocks that carry *source* to the service.

    Documents travel as their raw payload plus media type; synthesized
    sources travel as plain text.
    """
    if isinstance(source, SynthesizedSource):
        return [{
            "type": "text",
            "text": f"Topic context: {source.topic}\n\nContent:\n{source.body}",
        }]

    if source.media_type == "text/plain":
        return [{
            "type": "document",
            "source": {
                "type": "text",
                "media_type": "text/plain",
                "data": source.payload.decode("utf-8", errors="replace"),
            },
            "title": source.name,
        }]

    encoded = base64.standard_b64encode(source.payload).decode("ascii")
    if source.media_type.startswith("image/"):
        return [{
            "type": "image",
            "source": {"type": "base64", "media_type": source.media_type, "data": encoded},
        }]
    return [{
        "type": "document",
        "source": {"type": "base64", "media_type": source.media_type, "data": encoded},
        "title": source.name,
    }]


# ── Response decoding ──────────────────────────────────────────────────────


def _extract_json_text(raw: str) -> str:
    """Pull a JSON document out of *raw*.

    Handles bare JSON, JSON wrapped in ```json fences, and JSON surrounded
    by prose. The earliest ``{`` that opens a complete object wins, then the
    earliest ``[``; anything after that document is ignored.
    """
    text = raw.strip()
    for opener in "{[":
        start = text.find(opener)
        while start != -1:
            try:
                _, end = _DECODER.raw_decode(text, start)
            except json.JSONDecodeError:
                start = text.find(opener, start + 1)
                continue
            return text[start:end]
    return text


def parse_response(text: str, schema: type[T], stage: str, expects_json: bool = True) -> T:
    """Decode *text* and validate it against *schema*.

    Args:
        text: The joined text blocks of the reply.
        schema: Model to validate against.
        stage: Stage name carried by any error raised.
        expects_json: False for stages that reply in plain text.

    Raises:
        MalformedResponseError: If the text is empty, is not JSON when JSON
            is expected, or does not match the schema.
    """
    if not text or not text.strip():
        raise MalformedResponseError(stage, "empty reply")

    value: Any = text
    if expects_json:
        try:
            value = json.loads(_extract_json_text(text))
        except json.JSONDecodeError as exc:
            logger.error("%s reply is not valid JSON: %.200r", stage, text)
            raise MalformedResponseError(stage, "reply is not valid JSON") from exc

    try:
        return schema.model_validate(value)
    except ValidationError as exc:
        logger.error("%s reply failed %s validation: %s", stage, schema.__name__, exc)
        raise MalformedResponseError(
            stage, f"{exc.error_count()} {schema.__name__} validation error(s)"
        ) from exc


def is_rate_limited(exc: BaseException) -> bool:
    """True if *exc* signals that the service wants us to slow down."""
    if isinstance(exc, anthropic.RateLimitError):
        return True
    status = getattr(exc, "status_code", None)
    if status is not None:
        return status == 429
    message = str(exc).lower()
    return bool(_STATUS_429_RE.search(message)) or "too many requests" in message


# ── Client ─────────────────────────────────────────────────────────────────


class InferenceClient:
    """Sends stage requests to the service and returns validated results.

    The Anthropic client is lazy-initialised so that the class can be
    instantiated in tests without requiring a live API key. ``sleep`` is
    injectable so backoff can be observed without waiting.
    """

    def __init__(
        self,
        settings: Settings,
        client: object = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> object:
        """Lazy-initialise and return the Anthropic async SDK client."""
        if self._client is None:
            # Retries are ours; the SDK must surface 429s immediately.
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.anthropic_api_key,
                max_retries=0,
            )
        return self._client

    async def invoke(self, request: InferenceRequest, schema: type[T]) -> T:
        """Perform *request* and return its reply validated as *schema*.

        Args:
            request: Stage, model, prompt content and optional output schema.
            schema: Model the reply is validated against.

        Raises:
            RateLimitedError: Still rate-limited after every attempt.
            InferenceServiceError: Any other service failure (no retry).
            MalformedResponseError: The reply did not match *schema*.
        """
        text = await self._complete_with_retry(request)
        return parse_response(text, schema, request.stage, request.expects_json)

    async def _complete_with_retry(self, request: InferenceRequest) -> str:
        attempts = self.settings.retry_attempts
        delay = self.settings.retry_base_delay

        for attempt in range(1, attempts + 1):
            try:
                return await self._complete(request)
            except Exception as exc:
                if not is_rate_limited(exc):
                    if isinstance(exc, anthropic.APIError):
                        logger.error("%s request failed: %s", request.stage, exc)
                        raise InferenceServiceError(request.stage, str(exc)) from exc
                    raise
                if attempt == attempts:
                    break
                logger.warning(
                    "Rate limited during %s. Retry %d/%d in %.1fs...",
                    request.stage, attempt, attempts - 1, delay,
                )
                await self._sleep(delay)
                delay *= 2

        logger.error("%s still rate limited after %d attempts", request.stage, attempts)
        raise RateLimitedError(request.stage, attempts)

    async def _complete(self, request: InferenceRequest) -> str:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "system": request.system,
            "messages": [{"role": "user", "content": request.content}],
        }
        if request.output_schema is not None:
            kwargs["output_config"] = {
                "format": {"type": "json_schema", "schema": request.output_schema}
            }

        logger.info("Inference %s model=%s", request.stage, request.model)
        response = await self.client.messages.create(**kwargs)
        return "".join(
            block.text
            for block in response.content
            if getattr(block, "type", None) == "text"
        )
