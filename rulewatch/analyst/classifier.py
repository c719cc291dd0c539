"""
RelevanceClassifier - score post text against rule criteria.

The backend is chosen per rule by provider name. Any backend failure or
malformed reply is logged and returned as a zero score with the
explanation "unparseable"; classify() never raises.
"""

import logging
from typing import Dict, Optional

from ..config.settings import settings
from .backends import ScoringBackend, build_backends
from .schemas import Classification

logger = logging.getLogger(__name__)


class RelevanceClassifier:
    def __init__(
        self,
        backends: Optional[Dict[str, ScoringBackend]] = None,
        default_backend: Optional[str] = None,
    ):
        self.backends = backends if backends is not None else build_backends()
        self.default_backend = default_backend or settings.scoring_provider

    def backend_for(self, name: Optional[str]) -> Optional[ScoringBackend]:
        if name and name in self.backends:
            return self.backends[name]
        if name:
            logger.warning(f"Unknown scoring backend '{name}', using '{self.default_backend}'")
        return self.backends.get(self.default_backend)

    async def classify(self, text: str, criteria: str, backend: Optional[str] = None) -> Classification:
        scorer = self.backend_for(backend)
        if scorer is None:
            logger.error(f"No scoring backend available (requested={backend}, default={self.default_backend})")
            return Classification.unparseable()

        try:
            result = await scorer.score(text, criteria)
        except Exception as e:
            logger.warning(f"Scoring via {scorer.name} failed, treating as non-match: {e}")
            return Classification.unparseable()

        logger.debug(f"Scored via {scorer.name}: {result.relevance_score:.2f}")
        return result
