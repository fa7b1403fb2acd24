# services/translation_service.py
import os
import logging
from typing import List, Dict

from services.llm_service import generate_json_response

logger = logging.getLogger(__name__)

TARGET_LANGUAGE = os.getenv("TRANSLATION_TARGET_LANGUAGE", "Russian")
TRANSLATION_MODEL = os.getenv("TRANSLATION_MODEL")
TRANSLATION_BATCH_SIZE = 5


class TranslationError(Exception):
    pass


def translate_batch(items: List[Dict[str, str]]) -> Dict[str, Dict[str, str]]:
    """
    items: [{"id", "title", "abstract"}], at most TRANSLATION_BATCH_SIZE.
    Returns {id: {"title", "abstract"}} for the items the model translated.
    """
    if not items:
        return {}

    lines = []
    for item in items:
        lines.append(f"ID: {item['id']}\nTITLE: {item.get('title') or ''}\nABSTRACT: {item.get('abstract') or ''}")

    prompt = (
        f"Translate the following scientific article titles and abstracts into {TARGET_LANGUAGE}. "
        "Keep statistical notation, numbers and abbreviations unchanged.\n\n"
        + "\n\n".join(lines)
        + '\n\nRespond with JSON: {"translations": [{"id": str, "title": str, "abstract": str}]}'
    )

    try:
        result = generate_json_response(prompt, model=TRANSLATION_MODEL, temperature=0.2)
    except Exception as e:
        raise TranslationError(str(e)) from e

    translated = {}
    for entry in result.get("translations") or []:
        article_id = entry.get("id")
        if article_id and (entry.get("title") or entry.get("abstract")):
            translated[str(article_id)] = {
                "title": entry.get("title") or "",
                "abstract": entry.get("abstract") or "",
            }
    return translated
