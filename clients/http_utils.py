# clients/http_utils.py
import os
import time
import random
import logging
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)

USER_AGENT = os.getenv(
    "HTTP_USER_AGENT",
    f"LitPipeline/1.0 (mailto:{os.getenv('CROSSREF_MAILTO', 'support@example.org')})",
)


class SourceError(Exception):
    """Raised when an external bibliographic source cannot be reached."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{source}] {message}")
        self.source = source
        self.status_code = status_code


def get_with_retry(
    url: str,
    source: str,
    params=None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 30,
    max_retries: int = 3,
    base_delay: float = 1.0,
    allow_404: bool = False,
) -> Optional[requests.Response]:
    """
    GET with retry on 429 / 5xx / network errors.
    Honors Retry-After, adds jitter. Returns None for a 404 when allow_404.
    Raises SourceError once retries are exhausted or on any other 4xx.
    """
    merged_headers = {"User-Agent": USER_AGENT}
    if headers:
        merged_headers.update(headers)

    last_error = None
    for attempt in range(max_retries):
        try:
            resp = requests.get(url, params=params, headers=merged_headers, timeout=timeout)
        except requests.exceptions.RequestException as e:
            last_error = str(e)
            wait_time = base_delay * (2 ** attempt) + random.uniform(0, 0.5)
            logger.warning(f"⚠️ {source} network error: {e}. Retrying in {wait_time:.2f}s (Attempt {attempt + 1}/{max_retries})")
            time.sleep(wait_time)
            continue

        if resp.status_code == 429 or resp.status_code >= 500:
            last_error = f"HTTP {resp.status_code}"
            try:
                wait_time = float(resp.headers.get("Retry-After", base_delay * (2 ** attempt)))
            except ValueError:
                wait_time = base_delay * (2 ** attempt)
            wait_time = min(wait_time, 10) + random.uniform(0, 0.5)
            logger.warning(f"⚠️ {source} HTTP {resp.status_code}. Retrying in {wait_time:.2f}s (Attempt {attempt + 1}/{max_retries})")
            time.sleep(wait_time)
            continue

        if resp.status_code == 404 and allow_404:
            return None

        if resp.status_code >= 400:
            raise SourceError(source, f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code)

        return resp

    logger.error(f"❌ {source}: Max retries exceeded ({last_error})")
    raise SourceError(source, f"max retries exceeded ({last_error})")
