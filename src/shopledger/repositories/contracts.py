from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

Point = dict[str, Any]
Filter = dict[str, Any]


class VectorStore(Protocol):
    """Verbs the ledger needs from the remote collection store.

    Points are plain dicts: ``{"id": ..., "vector": ..., "payload": {...}}``.
    Failures raise ``StoreRequestError``.
    """

    async def get_collection(self, name: str) -> Optional[dict]: ...
    async def create_payload_index(self, name: str, field: str, schema_type: str) -> None: ...
    async def delete_payload_index(self, name: str, field: str) -> None: ...
    async def scroll(
        self,
        name: str,
        *,
        limit: int,
        offset: Any = None,
        filter: Optional[Filter] = None,
        with_vector: bool = False,
    ) -> tuple[list[Point], Any]: ...
    async def upsert(self, name: str, points: Sequence[Point]) -> None: ...
    async def delete_points(self, name: str, ids: Sequence[str]) -> None: ...
    async def delete_by_filter(self, name: str, filter: Filter) -> None: ...
    async def search(
        self, name: str, vector: Any, *, limit: int, filter: Optional[Filter] = None
    ) -> list[Point]: ...
    async def retrieve(self, name: str, ids: Sequence[str], with_vector: bool = True) -> list[Point]: ...


class EmbeddingService(Protocol):
    async def embed_text(self, text: str) -> Optional[list[float]]: ...
    async def embed_image(self, image: bytes, mime_type: str = "image/jpeg") -> Optional[list[float]]: ...
    async def hybrid_embed(
        self,
        text: str,
        image: Optional[bytes] = None,
        text_weight: float = 0.7,
        image_weight: float = 0.3,
    ) -> Optional[list[float]]: ...
