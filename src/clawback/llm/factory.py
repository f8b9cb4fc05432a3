"""Factory for creating LLM providers."""

import logging

from clawback.llm.openai_provider import OpenAIProvider
from clawback.llm.provider import LLMProvider
from clawback.orchestrator.config import EngineSettings

logger = logging.getLogger(__name__)


class LLMFactory:
    """Factory for creating LLM provider instances."""

    @staticmethod
    def create(settings: EngineSettings) -> LLMProvider:
        """Create the configured LLM provider.

        Args:
            settings: Engine settings carrying provider credentials.

        Returns:
            Configured LLM provider instance.

        Raises:
            ValueError: If credentials are missing.
        """
        logger.info("Creating LLM provider: openai")
        return OpenAIProvider(settings)
