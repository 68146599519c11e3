"""
Hybrid query engine: vector and keyword candidates fused into one ranking.

Pipeline per query:
    candidates -> weighted fusion -> temporal decay -> MMR -> min score -> cap

When only one branch can run, its raw scores are used as-is. With no
embedding provider the engine falls back to keyword search over the full
query plus its expanded terms, keeping each chunk's best score.
"""

import math
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set

from loguru import logger

from db.index_store import ChunkHit, IndexStore
from embeddings.pipeline import EmbeddingPipeline
from index_config import MemorySearchSettings

MAX_CANDIDATES = 200
MIN_TERM_LENGTH = 3
SECONDS_PER_DAY = 86400.0

STOPWORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had", "her", "was",
        "one", "our", "out", "has", "him", "his", "how", "its", "may", "new", "now", "old", "see",
        "two", "way", "who", "did", "get", "got", "let", "say", "she", "too", "use", "what", "when",
        "where", "which", "with", "this", "that", "these", "those", "from", "have", "will", "would",
        "could", "should", "about", "there", "their", "they", "them", "then", "than", "been", "were",
        "into", "your", "yours", "some", "just", "also", "does", "done", "each", "more", "most",
        "very", "much", "many", "such", "only", "over", "again", "other", "here", "why", "yes",
        "please", "tell", "know", "remember", "anything", "something", "thing", "things",
    }
)


@dataclass
class SearchResult:
    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "score": self.score,
            "snippet": self.snippet,
            "source": self.source,
        }


@dataclass
class Candidate:
    chunk_id: int
    path: str
    source: str
    start_line: int
    end_line: int
    snippet: str
    mtime: float
    vector_score: float = 0.0
    text_score: float = 0.0
    score: float = 0.0

    @classmethod
    def from_hit(cls, hit: ChunkHit) -> "Candidate":
        return cls(
            chunk_id=hit.chunk_id,
            path=hit.path,
            source=hit.source,
            start_line=hit.start_line,
            end_line=hit.end_line,
            snippet=hit.snippet,
            mtime=hit.mtime,
        )

    def to_result(self) -> SearchResult:
        return SearchResult(
            path=self.path,
            start_line=self.start_line,
            end_line=self.end_line,
            score=self.score,
            snippet=self.snippet,
            source=self.source,
        )


# ---------------------------------------------------------------------------
# Query text helpers
# ---------------------------------------------------------------------------


def build_fts_query(raw: str) -> Optional[str]:
    """Quoted alphanumeric tokens joined by AND, or None if there are none."""
    tokens = [token for token in re.findall(r"[^\W_]+", raw or "", flags=re.UNICODE) if token]
    if not tokens:
        return None
    return " AND ".join(f'"{token}"' for token in tokens)


def expand_query_terms(query: str) -> List[str]:
    """Keyword terms of a conversational query: lowercased, no stopwords, at least 3 chars."""
    terms: List[str] = []
    for token in re.split(r"[\s\W_]+", (query or "").lower(), flags=re.UNICODE):
        if len(token) < MIN_TERM_LENGTH or token in STOPWORDS or token in terms:
            continue
        terms.append(token)
    return terms


def candidate_limit(max_results: int, multiplier: float) -> int:
    return min(MAX_CANDIDATES, max(1, int(math.floor(max_results * multiplier))))


# ---------------------------------------------------------------------------
# Ranking stages
# ---------------------------------------------------------------------------


def merge_hybrid(
    vector_hits: Sequence[ChunkHit],
    keyword_hits: Sequence[ChunkHit],
    vector_weight: float,
    text_weight: float,
) -> List[Candidate]:
    merged: Dict[int, Candidate] = {}
    for hit in vector_hits:
        candidate = merged.setdefault(hit.chunk_id, Candidate.from_hit(hit))
        candidate.vector_score = max(candidate.vector_score, hit.score)
    for hit in keyword_hits:
        candidate = merged.setdefault(hit.chunk_id, Candidate.from_hit(hit))
        candidate.text_score = max(candidate.text_score, hit.score)

    for candidate in merged.values():
        candidate.score = vector_weight * candidate.vector_score + text_weight * candidate.text_score
    return sorted(merged.values(), key=lambda c: (-c.score, c.path, c.start_line))


def apply_temporal_decay(candidates: List[Candidate], half_life_days: float, now: Optional[float] = None) -> None:
    """Scale each score by 0.5^(age/half-life), age taken from the file mtime."""
    if half_life_days <= 0:
        return
    current = time.time() if now is None else now
    for candidate in candidates:
        if candidate.mtime <= 0:
            continue
        age_days = max(0.0, (current - candidate.mtime) / SECONDS_PER_DAY)
        candidate.score *= math.pow(0.5, age_days / half_life_days)
    candidates.sort(key=lambda c: (-c.score, c.path, c.start_line))


def _token_set(value: str) -> Set[str]:
    return set(re.findall(r"[^\W_]{2,}", (value or "").lower(), flags=re.UNICODE))


def _jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    inter = len(a & b)
    if inter <= 0:
        return 0.0
    return float(inter) / float(len(a | b))


def mmr_rerank(candidates: List[Candidate], lambda_value: float) -> List[Candidate]:
    """
    Greedy maximal-marginal-relevance ordering.

    Relevance is the candidate score normalized by the best score; similarity is
    Jaccard overlap of snippet tokens. Scores are left untouched, only the order
    changes.
    """
    if len(candidates) <= 1 or lambda_value >= 1.0:
        return list(candidates)
    top = max(c.score for c in candidates)
    tokens = {c.chunk_id: _token_set(c.snippet) for c in candidates}

    remaining = list(candidates)
    selected: List[Candidate] = []
    while remaining:
        best: Optional[Candidate] = None
        best_value = -math.inf
        for candidate in remaining:
            relevance = candidate.score / top if top > 0 else 0.0
            max_sim = 0.0
            for chosen in selected:
                sim = _jaccard(tokens[candidate.chunk_id], tokens[chosen.chunk_id])
                if sim > max_sim:
                    max_sim = sim
            value = lambda_value * relevance - (1.0 - lambda_value) * max_sim
            if value > best_value:
                best_value = value
                best = candidate
        assert best is not None
        selected.append(best)
        remaining.remove(best)
    return selected


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class HybridSearcher:
    def __init__(self, store: IndexStore, pipeline: EmbeddingPipeline, settings: MemorySearchSettings):
        self._store = store
        self._pipeline = pipeline
        self._settings = settings

    @property
    def search_mode(self) -> str:
        if self._pipeline.provider is None:
            return "fts-only" if self._store.fts_available else "unavailable"
        if not self._store.vector_available:
            return "fts-only" if self._store.fts_available else "unavailable"
        if not self._store.fts_available or not self._settings.query.hybrid.enabled:
            return "vector-only"
        return "hybrid"

    async def _keyword_only(self, query: str, limit: int, sources: Sequence[str]) -> List[Candidate]:
        best: Dict[int, Candidate] = {}
        for term in [query] + expand_query_terms(query):
            fts_query = build_fts_query(term)
            if fts_query is None:
                continue
            for hit in await self._store.search_keyword(fts_query, limit, sources):
                current = best.get(hit.chunk_id)
                if current is None:
                    current = Candidate.from_hit(hit)
                    best[hit.chunk_id] = current
                current.text_score = max(current.text_score, hit.score)
                current.score = current.text_score
        return sorted(best.values(), key=lambda c: (-c.score, c.path, c.start_line))

    async def _ranked_candidates(self, query: str, limit: int) -> List[Candidate]:
        sources = list(self._settings.sources)
        hybrid = self._settings.query.hybrid

        if self._pipeline.provider is None:
            if not self._store.fts_available:
                return []
            return await self._keyword_only(query, limit, sources)

        vector_hits: List[ChunkHit] = []
        vector_ran = False
        if self._store.vector_available:
            query_vector = await self._pipeline.embed_query(query)
            if any(value != 0 for value in query_vector):
                vector_ran = True
                vector_hits = await self._store.search_vector(
                    query_vector, limit, sources, model=self._pipeline.provider_key
                )

        keyword_hits: List[ChunkHit] = []
        keyword_ran = False
        if self._store.fts_available and (hybrid.enabled or not vector_ran):
            fts_query = build_fts_query(query)
            if fts_query is not None:
                keyword_ran = True
                keyword_hits = await self._store.search_keyword(fts_query, limit, sources)

        if vector_ran and keyword_ran:
            return merge_hybrid(vector_hits, keyword_hits, hybrid.vector_weight, hybrid.text_weight)
        if vector_ran:
            return merge_hybrid(vector_hits, [], 1.0, 0.0)
        if keyword_ran:
            return merge_hybrid([], keyword_hits, 0.0, 1.0)
        return []

    async def search(
        self,
        query: str,
        max_results: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[SearchResult]:
        cleaned = (query or "").strip()
        if not cleaned:
            return []
        query_settings = self._settings.query
        max_results = max_results if max_results and max_results > 0 else query_settings.max_results
        min_score = query_settings.min_score if min_score is None else min_score
        limit = candidate_limit(max_results, query_settings.hybrid.candidate_multiplier)

        ranked = await self._ranked_candidates(cleaned, limit)
        if not ranked:
            return []

        if query_settings.temporal_decay.enabled:
            apply_temporal_decay(ranked, query_settings.temporal_decay.half_life_days)
        if query_settings.mmr.enabled:
            ranked = mmr_rerank(ranked, query_settings.mmr.lambda_value)

        results = [c.to_result() for c in ranked if c.score >= min_score][:max_results]
        logger.debug(
            "memory search",
            mode=self.search_mode,
            candidates=len(ranked),
            returned=len(results),
        )
        return results
