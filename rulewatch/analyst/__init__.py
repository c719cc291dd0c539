from .schemas import (
    RelevanceVerdict,
    Classification,
    UNPARSEABLE,
)
from .backends import (
    ScoringBackend,
    AnthropicBackend,
    OpenAICompatibleBackend,
    build_backends,
)
from .classifier import RelevanceClassifier

__all__ = [
    "RelevanceVerdict",
    "Classification",
    "UNPARSEABLE",
    "ScoringBackend",
    "AnthropicBackend",
    "OpenAICompatibleBackend",
    "build_backends",
    "RelevanceClassifier",
]
