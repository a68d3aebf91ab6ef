"""Knowledge-base vector store: embedded ChromaDB backend and remote HTTP backend."""
import asyncio
import hashlib
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import chromadb
import httpx
import openai
import structlog
from chromadb.config import Settings as ChromaSettings

from support_workflow.config import Settings, get_settings
from support_workflow.exceptions import VectorStoreError
from support_workflow.models import (
    DEFAULT_SOURCE_WEIGHT,
    SOURCE_WEIGHTS,
    KBChunk,
    KBFilter,
    SearchHit,
)

logger = structlog.get_logger(__name__)

# Rough candidate pool before reranking
MIN_CANDIDATES = 30
MAX_ACCESS_BOOST = 0.05


def source_weight(source_type: str) -> float:
    return SOURCE_WEIGHTS.get(source_type, DEFAULT_SOURCE_WEIGHT)


def rerank_score(distance: float, source_type: str, access_count: int) -> float:
    """
    Combine cosine distance, source weight and popularity into one score.

    Args:
        distance: Cosine distance (0 = identical)
        source_type: Chunk source type, selects the weight
        access_count: How often the chunk has been used in answers

    Returns:
        relevance * weight + min(access_count / 100, 0.05)
    """
    relevance = max(0.0, 1.0 - min(distance, 1.0))
    boost = min((access_count or 0) / 100.0, MAX_ACCESS_BOOST)
    return relevance * source_weight(source_type) + boost


def content_hash(chunk: KBChunk) -> str:
    raw = f"{chunk.source_type.value}:{chunk.source_id}:{chunk.chunk_id}:{chunk.content}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class Embedder(Protocol):
    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class OpenAIEmbedder:
    """Embeddings through any OpenAI-compatible endpoint."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[openai.AsyncOpenAI] = None):
        settings = settings or get_settings()
        self.model = settings.embedding_model
        self.dimensions = settings.embedding_dimensions
        self.max_chars = settings.embedding_max_chars
        self.client = client or openai.AsyncOpenAI(
            api_key=settings.get_api_key(),
            base_url=settings.get_base_url(),
            timeout=settings.llm_timeout_seconds,
        )

    def prepare(self, text: str) -> str:
        """Collapse whitespace and cap the input length."""
        normalized = re.sub(r"\s+", " ", text or "").strip()
        return normalized[: self.max_chars]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        kwargs: Dict[str, Any] = {"model": self.model, "input": [self.prepare(t) for t in texts]}
        if self.dimensions and self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions
        response = await self.client.embeddings.create(**kwargs)
        return [item.embedding for item in response.data]


class VectorStore(Protocol):
    """Async contract shared by every knowledge-base backend."""

    async def upsert(self, chunks: Sequence[KBChunk]) -> None:
        ...

    async def search(self, query: str, k: int, filters: Optional[KBFilter] = None) -> List[SearchHit]:
        ...

    async def get_neighbors(
        self, source_type: str, source_id: str, chunk_id: int, window: int = 1
    ) -> List[SearchHit]:
        ...

    async def get_by_source(self, source_type: str, source_id: str) -> List[SearchHit]:
        ...

    async def delete_by_source(self, source_type: str, source_id: str) -> None:
        ...

    async def health(self) -> bool:
        ...

    async def update_access_count(self, chunk_ids: Sequence[str], context: Dict[str, Any]) -> None:
        ...


class ChromaVectorStore:
    """ChromaDB-backed store (SQLite persistence, cosine HNSW index)."""

    def __init__(
        self,
        embedder: Embedder,
        persist_directory: Optional[str] = None,
        collection_name: Optional[str] = None,
        client: Optional[Any] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the Chroma store.

        Args:
            embedder: Embedding provider
            persist_directory: Directory for persistent storage (ignored when client is given)
            collection_name: Collection to use (defaults to settings.vector_collection)
            client: Pre-built Chroma client, e.g. chromadb.EphemeralClient() in tests
            settings: Application settings (defaults to the global instance)
        """
        settings = settings or get_settings()
        self.embedder = embedder
        self.collection_name = collection_name or settings.vector_collection

        if client is None:
            persist_directory = persist_directory or settings.vector_db_path
            Path(persist_directory).mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(
                path=persist_directory,
                settings=ChromaSettings(anonymized_telemetry=False, allow_reset=True),
            )
        self.client = client
        self.collection = self._open_collection()

    def _open_collection(self):
        # Embeddings always come from self.embedder
        return self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine", "description": "Support knowledge base"},
            embedding_function=None,
        )

    @staticmethod
    def chunk_key(source_type: str, source_id: str, chunk_id: int) -> str:
        return f"{source_type}:{source_id}:{chunk_id}"

    @staticmethod
    def _source_where(source_type: str, source_id: str) -> Dict[str, Any]:
        return {"$and": [{"source_type": source_type}, {"source_id": str(source_id)}]}

    @staticmethod
    def _build_where(filters: Optional[KBFilter]) -> Optional[Dict[str, Any]]:
        if filters is None:
            return None
        clauses: List[Dict[str, Any]] = []
        if filters.source_type:
            clauses.append({"source_type": {"$in": [s.value for s in filters.source_type]}})
        if filters.module:
            clauses.append({"module": filters.module})
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    @staticmethod
    def _flat_metadata(chunk: KBChunk, access_count: int) -> Dict[str, Any]:
        flat: Dict[str, Any] = {
            "source_type": chunk.source_type.value,
            "source_id": chunk.source_id,
            "chunk_id": chunk.chunk_id,
            "content_hash": content_hash(chunk),
            "access_count": access_count,
            "metadata_json": json.dumps(chunk.metadata, ensure_ascii=False, default=str),
        }
        if chunk.title:
            flat["title"] = chunk.title
        module = chunk.metadata.get("module")
        if module:
            flat["module"] = str(module)
        return flat

    @staticmethod
    def _to_hit(chunk_key: str, document: str, flat: Dict[str, Any], score: float) -> SearchHit:
        try:
            metadata = json.loads(flat.get("metadata_json") or "{}")
        except json.JSONDecodeError:
            metadata = {}
        if flat.get("title") and "title" not in metadata:
            metadata["title"] = flat["title"]
        return SearchHit(
            id=chunk_key,
            content=document or "",
            source_type=flat.get("source_type", ""),
            source_id=flat.get("source_id"),
            chunk_id=flat.get("chunk_id"),
            score=score,
            metadata=metadata,
        )

    async def upsert(self, chunks: Sequence[KBChunk]) -> None:
        """
        Embed and insert-or-update chunks keyed by (source_type, source_id, chunk_id).

        Existing access counts survive re-indexing.
        """
        if not chunks:
            return
        embeddings = await self.embedder.embed([c.content for c in chunks])
        ids = [c.key for c in chunks]

        def _write() -> None:
            existing = self.collection.get(ids=ids, include=["metadatas"])
            counts = {
                key: int((meta or {}).get("access_count", 0))
                for key, meta in zip(existing["ids"], existing["metadatas"] or [])
            }
            self.collection.upsert(
                ids=ids,
                embeddings=embeddings,
                documents=[c.content for c in chunks],
                metadatas=[self._flat_metadata(c, counts.get(c.key, 0)) for c in chunks],
            )

        try:
            await asyncio.to_thread(_write)
        except Exception as e:
            raise VectorStoreError(f"Chroma upsert failed: {e}") from e
        logger.info("kb_chunks_upserted", count=len(chunks), collection=self.collection_name)

    async def search(self, query: str, k: int, filters: Optional[KBFilter] = None) -> List[SearchHit]:
        """
        Cosine search with source-weight and popularity reranking.

        Args:
            query: Free-text query
            k: Number of hits to return
            filters: Optional source-type / module restriction

        Returns:
            Top-k hits ordered by rerank score
        """
        if k <= 0:
            return []
        query_embedding = (await self.embedder.embed([query]))[0]
        where = self._build_where(filters)

        def _query() -> Dict[str, Any]:
            total = self.collection.count()
            if total == 0:
                return {}
            return self.collection.query(
                query_embeddings=[query_embedding],
                n_results=min(max(3 * k, MIN_CANDIDATES), total),
                where=where,
                include=["documents", "metadatas", "distances"],
            )

        try:
            results = await asyncio.to_thread(_query)
        except Exception as e:
            raise VectorStoreError(f"Chroma search failed: {e}") from e
        if not results or not results.get("ids"):
            return []

        hits = []
        for i, chunk_key in enumerate(results["ids"][0]):
            flat = results["metadatas"][0][i] or {}
            score = rerank_score(
                results["distances"][0][i],
                flat.get("source_type", ""),
                int(flat.get("access_count", 0)),
            )
            hits.append(self._to_hit(chunk_key, results["documents"][0][i], flat, score))

        hits.sort(key=lambda h: (-h.score, h.id))
        return hits[:k]

    async def get_neighbors(
        self, source_type: str, source_id: str, chunk_id: int, window: int = 1
    ) -> List[SearchHit]:
        lower = max(0, chunk_id - window)
        upper = chunk_id + window
        where = {
            "$and": [
                {"source_type": source_type},
                {"source_id": str(source_id)},
                {"chunk_id": {"$gte": lower}},
                {"chunk_id": {"$lte": upper}},
            ]
        }
        hits = await self._get(where)
        weight = source_weight(source_type)
        for hit in hits:
            hit.score = weight
        return sorted(hits, key=lambda h: h.chunk_id or 0)

    async def get_by_source(self, source_type: str, source_id: str) -> List[SearchHit]:
        hits = await self._get(self._source_where(source_type, source_id))
        return sorted(hits, key=lambda h: h.chunk_id or 0)

    async def _get(self, where: Dict[str, Any]) -> List[SearchHit]:
        try:
            results = await asyncio.to_thread(
                self.collection.get, where=where, include=["documents", "metadatas"]
            )
        except Exception as e:
            raise VectorStoreError(f"Chroma get failed: {e}") from e
        return [
            self._to_hit(key, results["documents"][i], results["metadatas"][i] or {}, 0.0)
            for i, key in enumerate(results["ids"])
        ]

    async def delete_by_source(self, source_type: str, source_id: str) -> None:
        try:
            await asyncio.to_thread(
                self.collection.delete, where=self._source_where(source_type, source_id)
            )
        except Exception as e:
            raise VectorStoreError(f"Chroma delete failed: {e}") from e
        logger.info("kb_source_deleted", source_type=source_type, source_id=source_id)

    async def health(self) -> bool:
        try:
            await asyncio.to_thread(self.client.heartbeat)
        except Exception as e:
            logger.warning("vector_store_unhealthy", backend="internal", error=str(e))
            return False
        return True

    async def update_access_count(self, chunk_ids: Sequence[str], context: Dict[str, Any]) -> None:
        """Increment access_count once for each distinct chunk id."""
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return

        def _increment() -> None:
            existing = self.collection.get(ids=ids, include=["metadatas"])
            if not existing["ids"]:
                return
            metadatas = []
            for meta in existing["metadatas"]:
                updated = dict(meta or {})
                updated["access_count"] = int(updated.get("access_count", 0)) + 1
                metadatas.append(updated)
            self.collection.update(ids=existing["ids"], metadatas=metadatas)

        try:
            await asyncio.to_thread(_increment)
        except Exception as e:
            raise VectorStoreError(f"Chroma access count update failed: {e}") from e
        logger.debug("kb_access_counted", chunk_ids=ids, **context)

    def reset(self) -> None:
        """Delete all documents in the collection."""
        self.client.delete_collection(self.collection_name)
        self.collection = self._open_collection()


class ExternalVectorStore:
    """Client for a remote vector service exposing the same contract over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        try:
            response = await self.client.post(path, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise VectorStoreError(f"Vector service {path} failed: {e}", {"path": path}) from e
        return body.get("data") if isinstance(body, dict) else None

    @staticmethod
    def _hits(data: Any) -> List[SearchHit]:
        return [SearchHit.model_validate(item) for item in data or []]

    async def upsert(self, chunks: Sequence[KBChunk]) -> None:
        if not chunks:
            return
        docs = [chunk.model_dump(mode="json") for chunk in chunks]
        await self._post("/upsert", {"docs": docs})

    async def search(self, query: str, k: int, filters: Optional[KBFilter] = None) -> List[SearchHit]:
        payload: Dict[str, Any] = {"query": query, "k": k}
        if filters is not None:
            payload["filters"] = filters.model_dump(mode="json", exclude_none=True)
        return self._hits(await self._post("/search", payload))

    async def get_neighbors(
        self, source_type: str, source_id: str, chunk_id: int, window: int = 1
    ) -> List[SearchHit]:
        data = await self._post(
            "/getNeighbors",
            {"source_type": source_type, "source_id": source_id, "chunk_id": chunk_id, "window": window},
        )
        return self._hits(data)

    async def get_by_source(self, source_type: str, source_id: str) -> List[SearchHit]:
        data = await self._post("/getBySource", {"source_type": source_type, "source_id": source_id})
        return self._hits(data)

    async def delete_by_source(self, source_type: str, source_id: str) -> None:
        await self._post("/deleteBySource", {"source_type": source_type, "source_id": source_id})

    async def health(self) -> bool:
        try:
            response = await self.client.get("/health")
        except httpx.HTTPError as e:
            logger.warning("vector_store_unhealthy", backend="external", error=str(e))
            return False
        return response.status_code == 200

    async def update_access_count(self, chunk_ids: Sequence[str], context: Dict[str, Any]) -> None:
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return
        await self._post("/updateAccessCount", {"chunkIds": ids, "context": context})

    async def aclose(self) -> None:
        await self.client.aclose()


def create_vector_store(
    settings: Optional[Settings] = None, embedder: Optional[Embedder] = None
) -> VectorStore:
    """
    Build the backend selected by settings.vector_backend.

    Args:
        settings: Application settings (defaults to the global instance)
        embedder: Embedding provider for the embedded backend

    Returns:
        A VectorStore implementation
    """
    settings = settings or get_settings()
    if settings.vector_backend == "external":
        if not settings.external_vector_base_url:
            raise ValueError("EXTERNAL_VECTOR_BASE_URL is required for the external backend")
        logger.info("vector_store_selected", backend="external", url=settings.external_vector_base_url)
        return ExternalVectorStore(settings.external_vector_base_url)

    logger.info("vector_store_selected", backend="internal", path=settings.vector_db_path)
    return ChromaVectorStore(embedder or OpenAIEmbedder(settings), settings=settings)
