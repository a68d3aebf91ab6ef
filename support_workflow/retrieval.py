"""Multi-query retrieval pipeline: fan-out, score fusion, diversity and dialog expansion."""
import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from support_workflow.config import Settings, get_settings
from support_workflow.exceptions import RetrievalFailure
from support_workflow.models import DIALOG_SOURCE_TYPES, KBFilter, SearchHit
from support_workflow.vector_store import VectorStore

logger = structlog.get_logger(__name__)

MULTI_HIT_BONUS_HIGH = 0.03
MULTI_HIT_BONUS_LOW = 0.01
MULTI_HIT_THRESHOLD = 0.7
SUMMARY_NEIGHBORS = 2
SUMMARY_WINDOW = 2


@dataclass
class RetrievalResult:
    """Result from a retrieval run."""
    hits: List[SearchHit]
    queries: List[str]
    top: List[SearchHit] = field(default_factory=list)
    duration_ms: int = 0
    used_fallback: bool = False

    @property
    def has_good_retrieval(self) -> bool:
        """More than one chunk came back."""
        return len(self.hits) > 1


def per_query_k(num_queries: int, base_k: int = 6) -> int:
    """Per-branch result count, inversely scaled by the number of queries."""
    n = max(1, num_queries)
    return max(base_k, math.ceil(2 * base_k / n))


def fuse_hits(branches: Iterable[Sequence[SearchHit]], summary_bonus: float = 0.02) -> List[SearchHit]:
    """
    Merge per-query hit lists by id.

    base = score (+ summary_bonus for summary chunks). For each id the maximum
    base and the hit count are kept; final = max_base + bonus * (hits - 1) where
    bonus depends only on max_base. Ties are broken by id, so the output does not
    depend on branch order.

    Args:
        branches: Hit lists, one per query branch
        summary_bonus: Bonus for chunk 0 / is_summary hits

    Returns:
        Hits with fused scores, best first
    """
    best: Dict[str, SearchHit] = {}
    max_base: Dict[str, float] = {}
    counts: Dict[str, int] = {}

    for branch in branches:
        for hit in branch:
            base = float(hit.score or 0.0) + (summary_bonus if hit.is_summary else 0.0)
            counts[hit.id] = counts.get(hit.id, 0) + 1
            if hit.id not in max_base or base > max_base[hit.id]:
                max_base[hit.id] = base
                best[hit.id] = hit

    fused = []
    for hit_id, hit in best.items():
        top_base = max_base[hit_id]
        bonus = MULTI_HIT_BONUS_HIGH if top_base > MULTI_HIT_THRESHOLD else MULTI_HIT_BONUS_LOW
        fused.append(hit.model_copy(update={"score": top_base + bonus * (counts[hit_id] - 1)}))

    fused.sort(key=lambda h: (-h.score, h.id))
    return fused


def diversify(hits: Sequence[SearchHit], top_n: int = 6, max_per_source: int = 2) -> List[SearchHit]:
    """
    Take the top_n hits with at most max_per_source per (source_type, source_id),
    then fill remaining slots from the ranked list without the cap.
    """
    per_source: Dict[str, int] = {}
    top: List[SearchHit] = []
    for hit in hits:
        if len(top) >= top_n:
            break
        count = per_source.get(hit.source_key, 0)
        if count >= max_per_source:
            continue
        top.append(hit)
        per_source[hit.source_key] = count + 1

    if len(top) < top_n:
        chosen = {h.id for h in top}
        for hit in hits:
            if len(top) >= top_n:
                break
            if hit.id in chosen:
                continue
            top.append(hit)
            chosen.add(hit.id)
    return top


class RetrievalPipeline:
    """Fan-out search over a vector store with fusion, diversity and expansion."""

    def __init__(self, store: VectorStore, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.store = store
        self.base_k = settings.rag_base_k
        self.top_n = settings.rag_top_n
        self.max_per_source = settings.rag_max_per_source
        self.max_results = settings.rag_max_results
        self.summary_bonus = settings.rag_summary_bonus
        self.search_timeout = settings.search_timeout_seconds

    async def search_branch(self, query: str, k: int, filters: Optional[KBFilter] = None) -> List[SearchHit]:
        """
        Search one query; a timeout cancels the call and yields no hits.

        Raises:
            RetrievalFailure: the store call failed
        """
        try:
            return await asyncio.wait_for(self.store.search(query, k, filters), timeout=self.search_timeout)
        except asyncio.TimeoutError:
            logger.warning("kb_search_timeout", query=query, timeout=self.search_timeout)
            return []
        except Exception as e:
            raise RetrievalFailure(f"Search failed for {query!r}: {e}", {"query": query}) from e

    async def fan_out(self, queries: Sequence[str], filters: Optional[KBFilter] = None) -> List[List[SearchHit]]:
        """
        Run all queries concurrently.

        Returns:
            One hit list per successful branch; failed branches are dropped
        """
        k = per_query_k(len(queries), self.base_k)
        outcomes = await asyncio.gather(
            *(self.search_branch(q, k, filters) for q in queries),
            return_exceptions=True,
        )
        branches: List[List[SearchHit]] = []
        for query, outcome in zip(queries, outcomes):
            if isinstance(outcome, BaseException):
                error = outcome.message if isinstance(outcome, RetrievalFailure) else str(outcome)
                logger.error("kb_search_failed", query=query, error=error)
                continue
            branches.append(outcome)
        return branches

    async def expand_dialog_hits(self, hits: Sequence[SearchHit]) -> List[SearchHit]:
        """
        Add neighbouring chunks for conversation sources.

        A group holding the summary (chunk 0) gets up to two following chunks;
        otherwise the group's best hit is surrounded by its +-1 neighbours.
        Neighbours always come from the same source.
        """
        groups: Dict[str, List[SearchHit]] = {}
        for hit in hits:
            groups.setdefault(hit.source_key, []).append(hit)

        expanded: List[SearchHit] = []
        for group in groups.values():
            first = group[0]
            if first.source_type not in DIALOG_SOURCE_TYPES or first.source_id is None:
                expanded.extend(group)
                continue

            summary = next((h for h in group if h.chunk_id == 0), None)
            if summary is not None:
                expanded.append(summary)
                neighbors = await self._neighbors(summary, 0, SUMMARY_WINDOW)
                neighbors = [n for n in neighbors if n.chunk_id != 0]
                neighbors.sort(key=lambda n: (-n.score, n.chunk_id or 0))
                expanded.extend(neighbors[:SUMMARY_NEIGHBORS])
                continue

            if first.chunk_id is None:
                expanded.append(first)
                continue
            neighbors = {n.chunk_id: n for n in await self._neighbors(first, first.chunk_id, 1)}
            neighbors[first.chunk_id] = first
            for cid in (first.chunk_id - 1, first.chunk_id, first.chunk_id + 1):
                if cid in neighbors:
                    expanded.append(neighbors[cid])

        unique: Dict[str, SearchHit] = {}
        for hit in expanded:
            unique.setdefault(hit.id, hit)
        return list(unique.values())[: self.max_results]

    async def _neighbors(self, hit: SearchHit, chunk_id: int, window: int) -> List[SearchHit]:
        try:
            neighbors = await self.store.get_neighbors(hit.source_type, hit.source_id, chunk_id, window)
        except Exception as e:
            logger.warning("kb_neighbors_failed", source=hit.source_key, error=str(e))
            return []
        return [
            n for n in neighbors
            if n.source_type == hit.source_type and n.source_id == hit.source_id
        ]

    async def retrieve(
        self,
        queries: Sequence[str],
        filters: Optional[KBFilter] = None,
        fallback_query: str = "",
        access_context: Optional[Dict[str, Any]] = None,
    ) -> RetrievalResult:
        """
        Run the full retrieval pipeline.

        Args:
            queries: Search queries (2-3 generated, or a single fallback)
            filters: Restriction applied to every branch (e.g. ticket module)
            fallback_query: Raw customer message searched when every branch failed
            access_context: Extra fields reported with the access-count update

        Returns:
            RetrievalResult with the expanded hits (empty when nothing could be searched)
        """
        started = time.monotonic()
        branches = await self.fan_out(queries, filters)
        used_fallback = False

        if not branches and queries:
            used_fallback = True
            logger.error("kb_all_searches_failed", queries=list(queries))
            try:
                branches = [
                    await asyncio.wait_for(
                        self.store.search(fallback_query, self.base_k, filters),
                        timeout=self.search_timeout,
                    )
                ]
            except Exception as e:
                logger.error("kb_fallback_search_failed", error=str(e) or type(e).__name__)
                return RetrievalResult(hits=[], queries=list(queries), used_fallback=True)

        fused = fuse_hits(branches, self.summary_bonus)
        top = diversify(fused, self.top_n, self.max_per_source)
        hits = await self.expand_dialog_hits(top)
        duration_ms = int((time.monotonic() - started) * 1000)

        chunk_ids = list(dict.fromkeys(h.id for h in top))
        if chunk_ids:
            context = dict(access_context or {})
            context["ragDuration"] = duration_ms
            try:
                await self.store.update_access_count(chunk_ids, context)
            except Exception as e:
                logger.warning("kb_access_count_failed", error=str(e))

        logger.info(
            "kb_retrieval_complete",
            queries=len(queries),
            branches=len(branches),
            fused=len(fused),
            returned=len(hits),
            duration_ms=duration_ms,
        )
        return RetrievalResult(
            hits=hits,
            queries=list(queries),
            top=top,
            duration_ms=duration_ms,
            used_fallback=used_fallback,
        )
