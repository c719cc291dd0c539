"""
Tests for relevance scoring: reply parsing, backend selection and failure handling.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from rulewatch.analyst.backends import (
    AnthropicBackend,
    OpenAICompatibleBackend,
    extract_json,
    parse_verdict,
)
from rulewatch.analyst.classifier import RelevanceClassifier
from rulewatch.analyst.schemas import UNPARSEABLE, Classification, RelevanceVerdict

from tests.test_helpers import FakeBackend


class TestParseVerdict:

    def test_plain_json(self):
        verdict = parse_verdict('{"score": 0.82, "explanation": "funding round"}')

        assert verdict.score == 0.82
        assert verdict.explanation == "funding round"

    def test_markdown_code_block(self):
        reply = 'Here you go:\n```json\n{"score": 0.5, "explanation": "partial",}\n```'

        assert parse_verdict(reply).score == 0.5

    def test_json_inside_prose(self):
        reply = 'I think {"score": 0.3, "explanation": "tangential"} is fair.'

        assert parse_verdict(reply).explanation == "tangential"

    def test_camel_case_alias(self):
        assert parse_verdict('{"relevanceScore": 0.9}').score == 0.9

    @pytest.mark.parametrize("raw,expected", [
        (1, 1.0),
        (7, 0.7),
        (85, 0.85),
        (100, 1.0),
        (-0.2, 0.0),
        ("0.4", 0.4),
    ])
    def test_score_is_normalized(self, raw, expected):
        assert RelevanceVerdict(score=raw).score == pytest.approx(expected)

    def test_ten_point_answer_stays_below_threshold(self):
        verdict = parse_verdict('{"score": 5, "explanation": "5/10, only tangential"}')

        assert verdict.score == pytest.approx(0.5)
        assert verdict.score < 0.7

    @pytest.mark.parametrize("reply", [
        "not json at all",
        "[1, 2]",
        '{"explanation": "no score"}',
        '{"score": 250}',
        '{"score": "NaN"}',
    ])
    def test_unusable_reply_raises(self, reply):
        with pytest.raises(ValueError):
            parse_verdict(reply)

    def test_extract_json_strips_trailing_commas(self):
        assert json.loads(extract_json('{"a": [1, 2,],}')) == {"a": [1, 2]}


class TestRelevanceClassifier:

    @pytest.mark.asyncio
    async def test_uses_named_backend(self):
        fake = FakeBackend()
        other = FakeBackend()
        classifier = RelevanceClassifier({"fake": fake, "other": other}, default_backend="fake")

        result = await classifier.classify("a match", "criteria", backend="other")

        assert result.relevance_score == 0.9
        assert other.calls == ["a match"]
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_unknown_backend_falls_back_to_default(self):
        fake = FakeBackend()
        classifier = RelevanceClassifier({"fake": fake}, default_backend="fake")

        result = await classifier.classify("noise", "criteria", backend="missing")

        assert result.relevance_score == 0.1
        assert fake.calls == ["noise"]

    @pytest.mark.asyncio
    async def test_backend_failure_is_unparseable(self):
        fake = FakeBackend()
        fake.fail_on.add("boom")
        classifier = RelevanceClassifier({"fake": fake}, default_backend="fake")

        result = await classifier.classify("boom", "criteria")

        assert result == Classification.unparseable()
        assert result.explanation == UNPARSEABLE

    @pytest.mark.asyncio
    async def test_no_backend_configured(self):
        classifier = RelevanceClassifier({}, default_backend="fake")

        result = await classifier.classify("text", "criteria")

        assert result.relevance_score == 0.0
        assert result.explanation == UNPARSEABLE


class TestAnthropicBackend:

    @pytest.mark.asyncio
    async def test_structured_output(self):
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=RelevanceVerdict(score=0.75, explanation="close enough")
        )
        backend = AnthropicBackend(client=client, model="claude-test")

        result = await backend.score("post text", "criteria text")

        assert result.relevance_score == 0.75
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["response_model"] is RelevanceVerdict
        assert "post text" in kwargs["messages"][0]["content"]
        assert "criteria text" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_errors_propagate_to_classifier(self):
        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))
        classifier = RelevanceClassifier(
            {"anthropic": AnthropicBackend(client=client)}, default_backend="anthropic"
        )

        result = await classifier.classify("text", "criteria")

        assert result.explanation == UNPARSEABLE


class TestOpenAICompatibleBackend:

    def make_backend(self, handler):
        requests = []

        def recording(request):
            requests.append(request)
            return handler(request)

        backend = OpenAICompatibleBackend(
            "openai",
            "https://llm.test/v1/",
            "secret",
            "gpt-test",
            client_factory=lambda: httpx.AsyncClient(
                base_url="https://llm.test/v1",
                transport=httpx.MockTransport(recording),
            ),
        )
        return backend, requests

    @pytest.mark.asyncio
    async def test_parses_chat_completion(self):
        reply = {"choices": [{"message": {"content": '{"score": 0.8, "explanation": "on topic"}'}}]}
        backend, requests = self.make_backend(lambda request: httpx.Response(200, json=reply))

        result = await backend.score("post", "criteria")

        assert result.relevance_score == 0.8
        assert result.explanation == "on topic"
        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/v1/chat/completions"
        assert body["model"] == "gpt-test"
        assert body["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        backend, _ = self.make_backend(lambda request: httpx.Response(500))

        with pytest.raises(httpx.HTTPStatusError):
            await backend.score("post", "criteria")

    @pytest.mark.asyncio
    async def test_garbage_reply_scores_zero_through_classifier(self):
        reply = {"choices": [{"message": {"content": "I cannot help with that."}}]}
        backend, _ = self.make_backend(lambda request: httpx.Response(200, json=reply))
        classifier = RelevanceClassifier({"openai": backend}, default_backend="openai")

        result = await classifier.classify("post", "criteria")

        assert result.relevance_score == 0.0
        assert result.explanation == UNPARSEABLE
