"""Filtering, sorting, truncation and response extras (facets, highlights,
suggestions, typeahead) applied after fusion."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import (
    HIGHLIGHT_WINDOW_WORDS,
    MAX_HIGHLIGHTS,
    MAX_SUGGESTIONS,
    MAX_TYPEAHEAD,
    CandidateItem,
    FacetCount,
    Facets,
    FusedResult,
    RankingFilters,
    SortMode,
    TypeaheadSuggestion,
)
from .normalize import fold_text, simple_tokenize
from .pipeline_types import FusedCandidate

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def _matches(candidate: CandidateItem, filters: RankingFilters) -> bool:
    if filters.category and fold_text(candidate.category) != fold_text(filters.category):
        return False
    if filters.author and fold_text(candidate.author) != fold_text(filters.author):
        return False
    dr = filters.date_range
    if dr is not None and (dr.start is not None or dr.end is not None):
        if candidate.published_at is None:
            return False
        if dr.start is not None and candidate.published_at < dr.start:
            return False
        if dr.end is not None and candidate.published_at > dr.end:
            return False
    return True


def apply_filters(
    fused: Sequence[FusedCandidate],
    candidates: Mapping[str, CandidateItem],
    filters: Optional[RankingFilters],
) -> List[FusedCandidate]:
    """Drop fused candidates that fail ``filters``. Scores are left untouched."""
    if filters is None:
        return [f for f in fused if f.candidate_id in candidates]
    return [
        f for f in fused
        if f.candidate_id in candidates and _matches(candidates[f.candidate_id], filters)
    ]


# ---------------------------------------------------------------------------
# Sort + rank
# ---------------------------------------------------------------------------

def _sort_key(
    mode: SortMode, candidates: Mapping[str, CandidateItem]
) -> Callable[[FusedCandidate], Tuple]:
    if mode is SortMode.DATE:
        def key(f: FusedCandidate) -> Tuple:
            published = candidates[f.candidate_id].published_at
            # undated items sort after every dated one
            return (published is None, -(published or _OLDEST).timestamp(), f.candidate_id)
        return key
    if mode is SortMode.POPULARITY:
        return lambda f: (-candidates[f.candidate_id].popularity.views, f.candidate_id)
    return lambda f: (-f.fused_score, f.candidate_id)


def sort_fused(
    fused: Sequence[FusedCandidate],
    candidates: Mapping[str, CandidateItem],
    sort_mode: SortMode = SortMode.RELEVANCE,
) -> List[FusedCandidate]:
    return sorted(fused, key=_sort_key(SortMode(sort_mode), candidates))


def truncate_and_rank(fused: Sequence[FusedCandidate], max_results: int) -> List[FusedResult]:
    """Keep the first ``max_results`` and assign dense 1-based ranks."""
    return [
        FusedResult(
            candidate_id=f.candidate_id,
            fused_score=f.fused_score,
            confidence=f.confidence,
            contributing_signals=list(f.contributing_signals),
            providers=list(f.providers),
            rank=i,
        )
        for i, f in enumerate(fused[:max_results], start=1)
    ]


# ---------------------------------------------------------------------------
# Facets & suggestions
# ---------------------------------------------------------------------------

def _facet_counts(values: Sequence[str]) -> List[FacetCount]:
    counts = Counter(v for v in values if v)
    return [
        FacetCount(name=name, count=n)
        for name, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]


def build_facets(
    fused: Sequence[FusedCandidate], candidates: Mapping[str, CandidateItem]
) -> Facets:
    items = [candidates[f.candidate_id] for f in fused if f.candidate_id in candidates]
    return Facets(
        categories=_facet_counts([c.category for c in items]),
        authors=_facet_counts([c.author for c in items]),
    )


def build_suggestions(
    results: Sequence[FusedResult],
    candidates: Mapping[str, CandidateItem],
    query_text: Optional[str] = None,
    limit: int = MAX_SUGGESTIONS,
) -> List[str]:
    """Distinct tags, then categories, of the top results in rank order.

    Terms equal to the query itself are skipped.
    """
    q = fold_text(query_text)
    seen: Dict[str, str] = {}
    for r in results:
        c = candidates.get(r.candidate_id)
        if c is None:
            continue
        for term in list(c.tags) + [c.category]:
            folded = fold_text(term)
            if not folded or folded == q or folded in seen:
                continue
            seen[folded] = term.strip()
            if len(seen) >= limit:
                return list(seen.values())
    return list(seen.values())


def build_highlights(
    candidate: CandidateItem,
    query_text: Optional[str],
    limit: int = MAX_HIGHLIGHTS,
    window: int = HIGHLIGHT_WINDOW_WORDS,
) -> List[str]:
    """Snippets of the body around the first occurrence of each query term."""
    terms = list(dict.fromkeys(simple_tokenize(query_text)))
    words = candidate.body_text.split()
    if not terms or not words:
        return []
    folded = [fold_text(w) for w in words]
    out: List[str] = []
    for term in terms:
        for i, w in enumerate(folded):
            if term in w:
                snippet = "..." + " ".join(words[max(0, i - window): i + window + 1]) + "..."
                if snippet not in out:
                    out.append(snippet)
                break
        if len(out) >= limit:
            break
    return out


# ---------------------------------------------------------------------------
# Typeahead
# ---------------------------------------------------------------------------

_KIND_ORDER = {"article": 0, "category": 1, "tag": 2}


def _prefix_rank(folded: str, prefix: str) -> int:
    if folded.startswith(prefix):
        return 0
    if any(word.startswith(prefix) for word in folded.split()):
        return 1
    return 2


def build_typeahead(
    candidates: Sequence[CandidateItem],
    prefix: str,
    limit: int = MAX_TYPEAHEAD,
) -> List[TypeaheadSuggestion]:
    """
    Titles, categories and tags containing ``prefix``.

    Whole-text prefix matches come first, then word-prefix matches, then
    plain substring matches; ties go to articles, then categories, then tags,
    then shorter text.
    """
    p = fold_text(prefix)
    if not p:
        return []
    found: Dict[Tuple[str, str], Tuple[Tuple[int, int, int, str], TypeaheadSuggestion]] = {}

    def offer(text: str, type_: str, kind: str, value: str) -> None:
        folded = fold_text(text)
        if not folded or p not in folded or (kind, folded) in found:
            return
        key = (_prefix_rank(folded, p), _KIND_ORDER[kind], len(folded), folded)
        found[(kind, folded)] = (key, TypeaheadSuggestion(text=text.strip(), type=type_, kind=kind, value=value))

    for c in candidates:
        offer(c.title, "query", "article", c.id)
        offer(c.category, "filter", "category", c.category.strip())
        for tag in c.tags:
            offer(tag, "filter", "tag", tag.strip())

    ranked = sorted(found.values(), key=lambda kv: kv[0])
    return [s for _, s in ranked[:limit]]
