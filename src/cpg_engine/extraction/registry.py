# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Registry of extraction adapters keyed by language."""

import logging
from typing import Dict, List, Optional

from .base import Extractor

logger = logging.getLogger(__name__)


class ExtractorRegistry:
    """Maps language identifiers to extraction adapters.

    Thread Safety:
    - Register all extractors during initialization before processing;
      lookups are read-only afterwards and safe from worker threads
    """

    def __init__(self) -> None:
        """Initialize empty extractor registry."""
        self._extractors: Dict[str, Extractor] = {}

    def register(self, extractor: Extractor) -> None:
        """Register an extractor, replacing any previous one for its language.

        Raises:
            TypeError: If extractor is not an Extractor instance.
        """
        if not isinstance(extractor, Extractor):
            raise TypeError(f"Extractor must be an Extractor instance, got {type(extractor)}")

        language = extractor.language()
        if language in self._extractors:
            logger.debug(f"Replacing extractor for language '{language}'")
        self._extractors[language] = extractor

        logger.debug(f"Registered extractor '{extractor.name()}' for language '{language}'")

    def get(self, language: str) -> Optional[Extractor]:
        return self._extractors.get(language)

    def languages(self) -> List[str]:
        """Languages with a registered extractor, sorted."""
        return sorted(self._extractors)

    def clear(self) -> None:
        """Remove all registered extractors."""
        self._extractors.clear()

    def count(self) -> int:
        return len(self._extractors)


def default_registry() -> ExtractorRegistry:
    """Registry with the bundled Python extractor."""
    from .python_extractor import PythonExtractor

    registry = ExtractorRegistry()
    registry.register(PythonExtractor())
    return registry
