#File: services/llm_factory.py
import os
import logging
from typing import Dict, Any
from openai import OpenAI

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ConfigurationError(Exception):
    """Raised when an external service is requested but its credentials are missing."""
    pass


class LLMProvider:
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    LOCAL = "local"


_KEY_ENV = {
    LLMProvider.OPENAI: "OPENAI_API_KEY",
    LLMProvider.OPENROUTER: "OPENROUTER_API_KEY",
}


class LLMFactory:
    """
    Builds OpenAI-compatible clients for chat (translation, stats detection)
    and embeddings. Clients are cached per effective configuration.
    """

    _instances: Dict[Any, OpenAI] = {}

    @staticmethod
    def default_provider() -> str:
        return os.getenv("LLM_PROVIDER", LLMProvider.OPENROUTER).lower()

    @staticmethod
    def embedding_provider() -> str:
        return os.getenv("EMBEDDING_PROVIDER", LLMFactory.default_provider()).lower()

    @staticmethod
    def is_configured(provider: str) -> bool:
        if provider == LLMProvider.LOCAL:
            return True
        env_name = _KEY_ENV.get(provider)
        return bool(env_name and os.getenv(env_name))

    @staticmethod
    def get_client(provider: str = None, **kwargs) -> OpenAI:
        """
        Get or create a client for the specified provider.
        Raises ConfigurationError when the provider has no API key.
        """
        provider = (provider or LLMFactory.default_provider()).lower()
        api_key = kwargs.get("api_key")
        base_url = kwargs.get("base_url")
        timeout = kwargs.get("timeout", 45.0)
        max_retries = kwargs.get("max_retries", 2)

        if provider == LLMProvider.OPENROUTER:
            api_key = api_key or os.getenv("OPENROUTER_API_KEY")
            base_url = base_url or OPENROUTER_BASE_URL
        elif provider == LLMProvider.OPENAI:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
        elif provider == LLMProvider.LOCAL:
            base_url = base_url or os.getenv("LOCAL_LLM_URL", "http://localhost:11434/v1")
            api_key = "ollama"
        else:
            raise ConfigurationError(f"Unknown LLM provider: {provider}")

        if not api_key:
            raise ConfigurationError(f"{_KEY_ENV.get(provider, 'API key')} is not set")

        cache_key = (provider, api_key, base_url or "", float(timeout), int(max_retries))
        if cache_key in LLMFactory._instances:
            return LLMFactory._instances[cache_key]

        logger.info(f"Initializing LLM Client for provider: {provider}")
        try:
            client = OpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout,
                max_retries=max_retries
            )
        except Exception as e:
            logger.error(f"Failed to initialize {provider} client: {e}")
            raise

        LLMFactory._instances[cache_key] = client
        return client

    @staticmethod
    def get_default_model(provider: str) -> str:
        if provider == LLMProvider.OPENROUTER:
            return os.getenv("OPENROUTER_MODEL", "google/gemini-2.0-flash-001")
        elif provider == LLMProvider.OPENAI:
            return os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        elif provider == LLMProvider.LOCAL:
            return os.getenv("LOCAL_MODEL", "llama3")
        return "gpt-4o-mini"

    @staticmethod
    def get_embedding_model(provider: str) -> str:
        configured = os.getenv("EMBEDDING_MODEL")
        if configured:
            return configured
        if provider == LLMProvider.OPENROUTER:
            return "openai/text-embedding-3-small"
        if provider == LLMProvider.LOCAL:
            return "nomic-embed-text"
        return "text-embedding-3-small"
