"""
Tests for examecho/inference.py

The Anthropic client is always mocked; ``sleep`` is replaced by a recorder
so backoff delays can be asserted without waiting.

Run with: pytest tests/test_inference.py
"""

import base64
import json

import anthropic
import httpx
import pytest

from conftest import make_anthropic_client, make_quiz_payload, text_response
from examecho.errors import (
    InferenceServiceError,
    MalformedResponseError,
    RateLimitedError,
)
from examecho.inference import (
    InferenceClient,
    InferenceRequest,
    _extract_json_text,
    is_rate_limited,
    parse_response,
    source_blocks,
)
from examecho.models import DocumentSource, Quiz, SynthesizedSource, TopicList

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def rate_limit_error() -> anthropic.RateLimitError:
    return anthropic.RateLimitError(
        "rate_limit_error",
        response=httpx.Response(429, request=_REQUEST),
        body=None,
    )


def bad_request_error(message: str = "invalid_request_error") -> anthropic.BadRequestError:
    return anthropic.BadRequestError(
        message,
        response=httpx.Response(400, request=_REQUEST),
        body=None,
    )


def quiz_request() -> InferenceRequest:
    return InferenceRequest(
        stage="quiz",
        model="fast-model",
        system="sys",
        content=[{"type": "text", "text": "make a quiz"}],
        output_schema={"type": "object"},
    )


def topics_request() -> InferenceRequest:
    return InferenceRequest(
        stage="topics",
        model="fast-model",
        system="sys",
        content=[{"type": "text", "text": "list topics"}],
    )


# ── Payload shaping ────────────────────────────────────────────────────────


class TestSourceBlocks:
    def test_synthesized_source_is_plain_text(self):
        blocks = source_blocks(SynthesizedSource(topic="Graphs", body="Edges and vertices."))
        assert blocks == [{
            "type": "text",
            "text": "Topic context: Graphs\n\nContent:\nEdges and vertices.",
        }]

    def test_pdf_is_base64_document(self):
        src = DocumentSource(payload=b"%PDF-1.7", media_type="application/pdf", name="a.pdf")
        (block,) = source_blocks(src)
        assert block["type"] == "document"
        assert block["source"]["media_type"] == "application/pdf"
        assert base64.b64decode(block["source"]["data"]) == b"%PDF-1.7"

    def test_plain_text_document(self):
        src = DocumentSource(payload=b"hello", media_type="text/plain", name="a.txt")
        (block,) = source_blocks(src)
        assert block["source"] == {"type": "text", "media_type": "text/plain", "data": "hello"}

    def test_image_block(self):
        src = DocumentSource(payload=b"\x89PNG", media_type="image/png", name="board.png")
        (block,) = source_blocks(src)
        assert block["type"] == "image"
        assert block["source"]["type"] == "base64"


# ── Response decoding ──────────────────────────────────────────────────────


class TestExtractJson:
    def test_plain_json(self):
        assert _extract_json_text('{"a": 1}') == '{"a": 1}'

    def test_fenced_json(self):
        assert json.loads(_extract_json_text('```json\n{"a": 1}\n```')) == {"a": 1}

    def test_json_inside_prose(self):
        raw = 'Here is your quiz: {"a": {"b": 2}} Good luck!'
        assert json.loads(_extract_json_text(raw)) == {"a": {"b": 2}}

    def test_json_followed_by_prose(self):
        raw = '{"a": [1, 2]}\nLet me know if you need more questions.'
        assert json.loads(_extract_json_text(raw)) == {"a": [1, 2]}

    def test_fenced_json_followed_by_prose(self):
        raw = '```json\n{"a": "}"}\n```\nGood luck!'
        assert json.loads(_extract_json_text(raw)) == {"a": "}"}

    def test_bracketed_prose_before_object(self):
        raw = 'See [1] below. {"a": 1}'
        assert json.loads(_extract_json_text(raw)) == {"a": 1}


class TestParseResponse:
    def test_valid_quiz(self):
        quiz = parse_response(json.dumps(make_quiz_payload(5)), Quiz, "quiz")
        assert len(quiz.questions) == 5

    def test_text_stage_skips_json_decoding(self):
        topics = parse_response("Trees, Heaps", TopicList, "topics", expects_json=False)
        assert topics.topics == ["Trees", "Heaps"]

    def test_empty_reply(self):
        with pytest.raises(MalformedResponseError) as info:
            parse_response("  ", Quiz, "quiz")
        assert info.value.stage == "quiz"

    def test_quiz_with_trailing_prose(self):
        text = json.dumps(make_quiz_payload(5)) + "\nLet me know if you need more questions."
        quiz = parse_response(text, Quiz, "quiz")
        assert len(quiz.questions) == 5

    def test_not_json(self):
        with pytest.raises(MalformedResponseError, match="not valid JSON"):
            parse_response("I cannot help with that.", Quiz, "quiz")

    def test_schema_mismatch_names_stage(self):
        with pytest.raises(MalformedResponseError) as info:
            parse_response('{"quiz_title": "x", "questions": []}', Quiz, "quiz")
        assert info.value.stage == "quiz"
        assert "Quiz" in str(info.value)


class TestIsRateLimited:
    def test_sdk_rate_limit_error(self):
        assert is_rate_limited(rate_limit_error())

    def test_too_many_requests_message(self):
        assert is_rate_limited(RuntimeError("HTTP 429 Too Many Requests"))

    def test_other_errors(self):
        assert not is_rate_limited(bad_request_error())
        assert not is_rate_limited(ValueError("boom"))

    def test_status_code_decides_over_message(self):
        assert not is_rate_limited(bad_request_error("prompt is too long: 204291 tokens"))

    def test_status_code_429_on_other_exception_types(self):
        exc = RuntimeError("slow down")
        exc.status_code = 429
        assert is_rate_limited(exc)

    def test_429_inside_a_number_is_not_a_rate_limit(self):
        assert not is_rate_limited(RuntimeError("request 14290 failed"))


# ── Retry policy ───────────────────────────────────────────────────────────


class TestInvoke:
    @pytest.mark.asyncio
    async def test_success_first_try(self, settings, fake_sleep, delays):
        client = make_anthropic_client(text_response(json.dumps(make_quiz_payload(5))))
        inference = InferenceClient(settings, client=client, sleep=fake_sleep)

        quiz = await inference.invoke(quiz_request(), Quiz)

        assert isinstance(quiz, Quiz)
        assert delays == []
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "fast-model"
        assert kwargs["output_config"]["format"]["type"] == "json_schema"

    @pytest.mark.asyncio
    async def test_text_request_sends_no_output_config(self, settings, fake_sleep):
        client = make_anthropic_client(text_response("Trees, Heaps"))
        inference = InferenceClient(settings, client=client, sleep=fake_sleep)

        topics = await inference.invoke(topics_request(), TopicList)

        assert topics.topics == ["Trees", "Heaps"]
        assert "output_config" not in client.messages.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_retries_rate_limit_then_succeeds(self, settings, fake_sleep, delays):
        client = make_anthropic_client(
            rate_limit_error(),
            rate_limit_error(),
            text_response(json.dumps(make_quiz_payload(5))),
        )
        inference = InferenceClient(settings, client=client, sleep=fake_sleep)

        quiz = await inference.invoke(quiz_request(), Quiz)

        assert len(quiz.questions) == 5
        assert client.messages.create.await_count == 3
        assert delays == [1.0, 2.0]
        assert delays[1] > delays[0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_rate_limited(self, settings, fake_sleep, delays):
        client = make_anthropic_client(rate_limit_error(), rate_limit_error(), rate_limit_error())
        inference = InferenceClient(settings, client=client, sleep=fake_sleep)

        with pytest.raises(RateLimitedError) as info:
            await inference.invoke(quiz_request(), Quiz)

        assert info.value.attempts == 3
        assert info.value.stage == "quiz"
        assert not isinstance(info.value, anthropic.RateLimitError)
        assert client.messages.create.await_count == 3
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_rate_limit_error_is_not_retried(self, settings, fake_sleep, delays):
        client = make_anthropic_client(bad_request_error())
        inference = InferenceClient(settings, client=client, sleep=fake_sleep)

        with pytest.raises(InferenceServiceError) as info:
            await inference.invoke(quiz_request(), Quiz)

        assert isinstance(info.value.__cause__, anthropic.BadRequestError)
        assert client.messages.create.await_count == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_bad_request_mentioning_429_is_not_retried(self, settings, fake_sleep, delays):
        error = bad_request_error("prompt is too long: 204291 tokens > 200000 maximum")
        client = make_anthropic_client(error, error, error)
        inference = InferenceClient(settings, client=client, sleep=fake_sleep)

        with pytest.raises(InferenceServiceError):
            await inference.invoke(quiz_request(), Quiz)

        assert client.messages.create.await_count == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_malformed_reply_is_not_retried(self, settings, fake_sleep, delays):
        client = make_anthropic_client(text_response('{"quiz_title": "x"}'))
        inference = InferenceClient(settings, client=client, sleep=fake_sleep)

        with pytest.raises(MalformedResponseError):
            await inference.invoke(quiz_request(), Quiz)

        assert client.messages.create.await_count == 1
        assert delays == []

    def test_client_is_lazy(self, settings):
        inference = InferenceClient(settings)
        assert inference._client is None
