from __future__ import annotations

import asyncio
import base64
import logging
from typing import Optional

import requests

log = logging.getLogger("shopledger.embedding")

DEFAULT_EMBEDDING_URL = "https://generativelanguage.googleapis.com/v1beta"


class NullEmbeddingService:
    """No embedding backend: every vector falls back to a placeholder."""

    async def embed_text(self, text: str) -> Optional[list[float]]:
        return None

    async def embed_image(self, image: bytes, mime_type: str = "image/jpeg") -> Optional[list[float]]:
        return None

    async def hybrid_embed(self, text, image=None, text_weight=0.7, image_weight=0.3) -> Optional[list[float]]:
        return None


class HttpEmbeddingService:
    def __init__(self, api_key: str, model: str = "text-embedding-004", base_url: str = "", timeout: float = 15.0):
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or DEFAULT_EMBEDDING_URL).rstrip("/")
        self.timeout = timeout

    def _post_json(self, body: dict) -> dict:
        url = f"{self.base_url}/models/{self.model}:embedContent"
        r = requests.post(url, params={"key": self.api_key}, json=body, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def _extract_values(self, data: dict) -> list[float]:
        # {"embedding": {"values": [...]}} or {"embeddings": [{"values": [...]}]}
        embedding = data.get("embedding")
        if isinstance(embedding, dict) and embedding.get("values"):
            return list(embedding["values"])
        embeddings = data.get("embeddings")
        if isinstance(embeddings, list) and embeddings and embeddings[0].get("values"):
            return list(embeddings[0]["values"])
        raise ValueError("Embedding response has no values.")

    async def _embed(self, parts: list[dict], what: str) -> Optional[list[float]]:
        body = {"model": f"models/{self.model}", "content": {"parts": parts}}
        try:
            data = await asyncio.to_thread(self._post_json, body)
            return self._extract_values(data)
        except (requests.RequestException, ValueError) as e:
            log.warning("embedding_failed kind=%s error=%s", what, e)
            return None

    async def embed_text(self, text: str) -> Optional[list[float]]:
        if not text or not text.strip():
            return None
        return await self._embed([{"text": text}], "text")

    async def embed_image(self, image: bytes, mime_type: str = "image/jpeg") -> Optional[list[float]]:
        if not image:
            return None
        data = base64.b64encode(image).decode("ascii")
        return await self._embed([{"inline_data": {"mime_type": mime_type, "data": data}}], "image")

    async def hybrid_embed(
        self,
        text: str,
        image: Optional[bytes] = None,
        text_weight: float = 0.7,
        image_weight: float = 0.3,
    ) -> Optional[list[float]]:
        text_vec = await self.embed_text(text)
        if image is None:
            return text_vec
        image_vec = await self.embed_image(image)
        if text_vec is None or image_vec is None or len(text_vec) != len(image_vec):
            return text_vec or image_vec
        return [t * text_weight + i * image_weight for t, i in zip(text_vec, image_vec)]
