# clients/embedding_client.py
import logging
from typing import List, Optional

from services.llm_factory import LLMFactory

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 8000


class EmbeddingError(Exception):
    """Raised when the embedding API fails or returns no vector."""
    pass


def embedding_model() -> str:
    return LLMFactory.get_embedding_model(LLMFactory.embedding_provider())


def ensure_configured():
    """Raises ConfigurationError before any job work when no embedding key is set."""
    LLMFactory.get_client(LLMFactory.embedding_provider())


def embed_text(text: str, model: Optional[str] = None) -> List[float]:
    provider = LLMFactory.embedding_provider()
    client = LLMFactory.get_client(provider)
    model = model or LLMFactory.get_embedding_model(provider)

    try:
        response = client.embeddings.create(model=model, input=[text[:MAX_INPUT_CHARS]])
    except Exception as e:
        logger.error(f"Embedding request failed: {e}", exc_info=True)
        raise EmbeddingError(f"Embedding request failed: {e}") from e

    if not response.data or not response.data[0].embedding:
        raise EmbeddingError("Embedding API returned no vector")
    return list(response.data[0].embedding)
