"""
Scoring backends - one per LLM provider.

- anthropic: Claude via Instructor, structured output into RelevanceVerdict
- openai / dashscope: OpenAI-compatible chat completions in JSON mode over httpx

Backends raise on any failure; RelevanceClassifier turns that into a zero
score so a bad response never aborts a poll cycle.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import httpx
import instructor
from anthropic import AsyncAnthropic

from ..common.http_client import create_api_client
from ..config.settings import settings
from .schemas import Classification, RelevanceVerdict

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a content analyst. Judge how relevant a social media post is to the
user's filtering criteria.

Return a relevance score between 0 and 1:
- 0.9-1.0: the post is squarely about what the criteria describe
- 0.7-0.9: clearly related, worth notifying
- 0.3-0.7: tangential or only partially related
- 0.0-0.3: unrelated

Keep the explanation to one or two sentences."""

JSON_INSTRUCTIONS = """
Respond with JSON only, in this shape:
{"score": 0.8, "explanation": "why this score"}"""


def build_prompt(text: str, criteria: str) -> str:
    return f"""Post:
{text}

Filtering criteria:
{criteria}

How relevant is the post to the criteria?"""


def _fix_json(text: str) -> str:
    """Remove trailing commas before } or ]."""
    return re.sub(r',(\s*[}\]])', r'\1', text)


def extract_json(text: str) -> str:
    """Extract a JSON object from a markdown code block or surrounding prose."""
    code_block_match = re.search(r'```(?:json)?\s*\n(.*?)\n```', text, re.DOTALL)
    if code_block_match:
        return _fix_json(code_block_match.group(1).strip())

    json_object_match = re.search(r'\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}', text, re.DOTALL)
    if json_object_match:
        candidate = _fix_json(json_object_match.group(0))
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            pass

    return _fix_json(text.strip())


def parse_verdict(content: str) -> RelevanceVerdict:
    """Parse a model reply into a verdict. Raises ValueError if it does not fit."""
    data = json.loads(extract_json(content))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    # Tolerate the camelCase key some prompts produce
    if "score" not in data and "relevanceScore" in data:
        data["score"] = data.pop("relevanceScore")
    return RelevanceVerdict.model_validate(data)


class ScoringBackend(ABC):
    name = "base"

    @abstractmethod
    async def score(self, text: str, criteria: str) -> Classification:
        ...


class AnthropicBackend(ScoringBackend):
    """Claude with Instructor structured output."""

    name = "anthropic"

    def __init__(self, client=None, model: Optional[str] = None):
        self._client = client
        self.model = model or settings.llm_model

    @property
    def client(self):
        # Built lazily so a missing API key only matters when the backend is used
        if self._client is None:
            self._client = instructor.from_anthropic(
                AsyncAnthropic(
                    api_key=settings.anthropic_api_key,
                    timeout=httpx.Timeout(settings.llm_timeout, connect=settings.llm_connect_timeout),
                )
            )
        return self._client

    async def score(self, text: str, criteria: str) -> Classification:
        verdict = await self.client.messages.create(
            model=self.model,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": build_prompt(text, criteria)}],
            response_model=RelevanceVerdict,
            max_retries=settings.llm_max_retries,
        )
        return Classification.from_verdict(verdict)


class OpenAICompatibleBackend(ScoringBackend):
    """Chat-completions JSON mode against any OpenAI-compatible endpoint."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        model: str,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self._client_factory = client_factory or (
            lambda: create_api_client(
                base_url=self.base_url,
                token=self.api_key,
                timeout=settings.llm_timeout,
                connect_timeout=settings.llm_connect_timeout,
            )
        )

    async def score(self, text: str, criteria: str) -> Classification:
        payload = {
            "model": self.model,
            "temperature": settings.llm_temperature,
            "max_tokens": settings.llm_max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT + JSON_INSTRUCTIONS},
                {"role": "user", "content": build_prompt(text, criteria)},
            ],
        }
        async with self._client_factory() as client:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()

        content = data["choices"][0]["message"]["content"] or ""
        return Classification.from_verdict(parse_verdict(content))


def build_backends() -> Dict[str, ScoringBackend]:
    """All configured scoring backends keyed by provider name."""
    return {
        "anthropic": AnthropicBackend(),
        "openai": OpenAICompatibleBackend(
            "openai", settings.openai_base_url, settings.openai_api_key, settings.openai_model
        ),
        "dashscope": OpenAICompatibleBackend(
            "dashscope", settings.dashscope_base_url, settings.dashscope_api_key, settings.dashscope_model
        ),
    }
