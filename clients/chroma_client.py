# File: clients/chroma_client.py

"""
Similarity index for article embeddings.
Prefers remote HTTP client when CHROMA_SERVER is set.
Defaults to local PersistentClient.
"""

import os
import logging
import threading
import urllib.parse
from typing import Optional, Any, Dict, List

from chromadb import PersistentClient, HttpClient

logger = logging.getLogger(__name__)

COLLECTION_NAME = os.getenv("CHROMA_COLLECTION", "article_embeddings")
CHROMA_PATH = os.getenv("CHROMA_PATH", "./chroma_storage")


class _ChromaClient:
    def __init__(self):
        server = os.getenv("CHROMA_SERVER", "").strip()
        self._client = None

        # 1️⃣ Remote deployment (HTTP mode)
        if server:
            parsed = urllib.parse.urlparse(server)
            host = parsed.hostname
            port = parsed.port or (80 if parsed.scheme == "http" else 443)

            try:
                logger.info(f"Connecting to remote Chroma at: {host}:{port}")
                self._client = HttpClient(host=host, port=port, ssl=(parsed.scheme == "https"))
            except Exception as e:
                logger.error(f"Failed HTTP Chroma client: {e}", exc_info=True)

        # 2️⃣ Local persistent DB
        if self._client is None:
            try:
                logger.info("Initializing local persistent Chroma client...")
                self._client = PersistentClient(path=CHROMA_PATH)
            except Exception:
                logger.critical("FATAL: Cannot initialize Chroma client.", exc_info=True)
                raise

        # 3️⃣ Create or load collection
        try:
            self._collection = self._client.get_or_create_collection(
                name=COLLECTION_NAME,
                metadata={"hnsw:space": "cosine"},
            )
        except Exception:
            logger.critical("FATAL: Cannot create or load collection.", exc_info=True)
            raise

    def upsert_vector(self, article_id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None):
        self._collection.upsert(
            ids=[article_id],
            embeddings=[vector],
            metadatas=[{**(metadata or {}), "article_id": article_id}],
        )

    def query_vector(
        self,
        vector: List[float],
        n_results: int = 10,
        article_ids: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Nearest neighbors by cosine distance, optionally restricted to a set of
        article ids. Results are sorted by ascending distance.
        """
        where = {"article_id": {"$in": article_ids}} if article_ids else None
        try:
            result = self._collection.query(
                query_embeddings=[vector],
                n_results=n_results,
                where=where,
                include=["metadatas", "distances"],
            )
        except Exception as e:
            logger.error(f"Chroma query failed: {e}", exc_info=True)
            return []

        ids = (result.get("ids") or [[]])[0]
        metas = (result.get("metadatas") or [[]])[0]
        dists = (result.get("distances") or [[]])[0]

        matches = []
        for i in range(len(ids)):
            matches.append({
                "id": ids[i],
                "metadata": metas[i] if metas else {},
                "distance": dists[i] if dists else 0.0,
            })
        matches.sort(key=lambda x: x["distance"])
        return matches


# -----------------------
# Singleton accessor
# -----------------------
_client: Optional[_ChromaClient] = None
_client_lock = threading.Lock()


def get_client() -> _ChromaClient:
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = _ChromaClient()
    return _client
