"""Tiered document search and cached answers.

Ties the query tier classifier, the document store and the answer cache
together. Every call emits one telemetry record without waiting on it.
"""

from __future__ import annotations

import html
import time
from typing import TYPE_CHECKING, Any

import structlog

from civichub.answer_cache import normalize_query
from civichub.errors import CivicHubError, ErrorCode
from civichub.models.cache import AnswerSource, ComputedAnswer
from civichub.models.search import SearchTelemetry
from civichub.tiers import get_search_tiers

if TYPE_CHECKING:
    from civichub.models.cache import CacheEntry
    from civichub.models.documents import DocumentMatch
    from civichub.state import AppState

log = structlog.get_logger()

MIN_TERM_LENGTH = 3
MAX_CONTEXT_DOCUMENTS = 5
MAX_CONTEXT_CHARS = 1500


def query_terms(query: str) -> list[str]:
    return [t for t in normalize_query(query).split() if len(t) >= MIN_TERM_LENGTH]


def build_prompt(query: str, matches: list[DocumentMatch]) -> str:
    """Prompt for the text generator: numbered excerpts, then the question."""
    blocks = []
    for number, match in enumerate(matches, start=1):
        doc = match.document
        blocks.append(f"[{number}] {doc.title}\n{doc.url}\n{doc.body[:MAX_CONTEXT_CHARS]}")
    context = "\n\n".join(blocks)
    return (
        "Answer the resident's question using only the numbered sources below. "
        "Cite sources by number. If the sources do not answer it, say so.\n\n"
        f"{context}\n\nQuestion: {query}"
    )


def _similarity(matches: list[DocumentMatch]) -> tuple[float | None, float | None]:
    if not matches:
        return None, None
    scores = [m.score for m in matches]
    return scores[0], sum(scores) / len(scores)


async def _retrieve(
    state: AppState, town_id: str, query: str
) -> tuple[list[str], list[DocumentMatch]]:
    tiers = [str(t) for t in get_search_tiers(query)]
    matches = await state.store.search_documents(town_id, query_terms(query), tiers)
    return tiers, matches


def _document_dict(match: DocumentMatch) -> dict[str, Any]:
    doc = match.document
    return {
        "title": doc.title,
        "url": doc.url,
        "category": doc.category,
        "tier": doc.relevance_tier,
        "score": round(match.score, 3),
        "published_at": doc.published_at.isoformat() if doc.published_at else None,
        "stale": doc.is_stale,
    }


async def search(state: AppState, town_id: str, query: str) -> dict[str, Any]:
    """Return tiers, matching documents and any fresh cached answer."""
    start = time.monotonic()
    tiers, matches = await _retrieve(state, town_id, query)
    cached = await state.answer_cache.get(town_id, query)
    top, avg = _similarity(matches)

    state.telemetry.emit(
        SearchTelemetry(
            query=query,
            town=town_id,
            result_count=len(matches),
            total_latency_ms=int((time.monotonic() - start) * 1000),
            tiers=tiers,
            top_similarity=top,
            avg_similarity=avg,
            had_ai_answer=cached is not None,
            cached=cached is not None,
        )
    )
    return {
        "query": query,
        "town": town_id,
        "tiers": tiers,
        "documents": [_document_dict(m) for m in matches],
        "cachedAnswer": cached.model_dump(mode="json") if cached is not None else None,
    }


async def answer_query(state: AppState, town_id: str, query: str) -> CacheEntry:
    """Return a generated answer, computing it at most once per normalized query.

    Raises CivicHubError(CONFIG_ERROR) when no text generator is configured
    and the answer is not already cached.
    """
    start = time.monotonic()
    tiers, matches = await _retrieve(state, town_id, query)
    top, avg = _similarity(matches)
    computed = False

    async def compute() -> ComputedAnswer:
        nonlocal computed
        if state.generator is None:
            raise CivicHubError(
                code=ErrorCode.CONFIG_ERROR,
                message="No text generator configured; cannot compute answers",
            )
        computed = True
        context = matches[:MAX_CONTEXT_DOCUMENTS]
        if not context:
            return ComputedAnswer(
                answer_html=(
                    "<p>No matching town information was found for "
                    f"&ldquo;{html.escape(query)}&rdquo;.</p>"
                )
            )
        text = await state.generator.generate(build_prompt(query, context))
        return ComputedAnswer(
            answer_html=text,
            sources=[AnswerSource(title=m.document.title, url=m.document.url) for m in context],
        )

    entry = await state.answer_cache.get_or_compute(town_id, query, compute)
    log.info("answer_served", town_id=town_id, key=entry.normalized_key, computed=computed)

    state.telemetry.emit(
        SearchTelemetry(
            query=query,
            town=town_id,
            result_count=len(matches),
            total_latency_ms=int((time.monotonic() - start) * 1000),
            tiers=tiers,
            top_similarity=top,
            avg_similarity=avg,
            had_ai_answer=True,
            cached=not computed,
        )
    )
    return entry
