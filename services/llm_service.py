import json
import logging
from typing import Optional, Dict, Any

from services.llm_factory import LLMFactory

logger = logging.getLogger(__name__)


class LLMGenerationError(Exception):
    """Raised when the LLM fails to generate a response."""
    pass


class LLMJSONParseError(Exception):
    """Raised when the LLM response cannot be parsed as JSON."""
    pass


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def generate_json_response(
    prompt: str,
    model: Optional[str] = None,
    temperature: float = 0.2,
    system_prompt: str = "",
    provider: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Generates a JSON response. Enforces JSON mode.
    Raises:
        ConfigurationError: If the provider has no API key.
        LLMGenerationError: If the API call fails.
        LLMJSONParseError: If the response is not valid JSON.
    """
    provider = provider or LLMFactory.default_provider()
    client = LLMFactory.get_client(provider)
    model = model or LLMFactory.get_default_model(provider)

    content = ""
    try:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            response_format={"type": "json_object"},
            timeout=30.0
        )

        if not response.choices or not response.choices[0].message.content:
            logger.error("LLM returned empty response or no content")
            raise LLMGenerationError("LLM returned empty response")

        content = response.choices[0].message.content
        return json.loads(_strip_code_fence(content))

    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM JSON response: {e}. Content: {content[:200]}")
        raise LLMJSONParseError(f"Failed to parse JSON from LLM response: {e}") from e
    except LLMGenerationError:
        raise
    except Exception as e:
        logger.error(f"LLM JSON Generation Failed: {e}", exc_info=True)
        raise LLMGenerationError(f"Failed to generate JSON response: {e}") from e
