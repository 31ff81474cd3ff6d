from __future__ import annotations
"""
Fusion of normalised provider signals.

Weighted fusion with available-weight renormalisation:

    fused(c)      = sum_i score_i(c) * w_i / sum_i w_i
    confidence(c) = sum_i conf_i(c)  * w_i / sum_i w_i

where i only ranges over the providers that actually scored c. A candidate
no provider scored never appears in the output; a 0 only comes from a
provider that looked at the candidate and said 0.
"""

from collections import OrderedDict
from typing import Dict, Iterable, List, Mapping, Sequence

from loguru import logger

from .pipeline_types import FusedCandidate, NormalizedScore

FUSION_EPS = 1e-12


# =============================================================================
# Deduplication (grouping by id)
# =============================================================================

def group_by_candidate(
    scores: Iterable[NormalizedScore],
) -> "OrderedDict[str, OrderedDict[str, List[NormalizedScore]]]":
    """candidate_id -> provider_id -> observations, in first-seen order.

    Pure grouping: observations are not altered or merged here.
    """
    grouped: "OrderedDict[str, OrderedDict[str, List[NormalizedScore]]]" = OrderedDict()
    for s in scores:
        grouped.setdefault(s.candidate_id, OrderedDict()).setdefault(s.provider_id, []).append(s)
    return grouped


def _dedupe_strings(chunks: Iterable[Iterable[str]]) -> List[str]:
    seen = set()
    out: List[str] = []
    for chunk in chunks:
        for s in chunk:
            if not s or s in seen:
                continue
            seen.add(s)
            out.append(s)
    return out


def _collapse(observations: Sequence[NormalizedScore]) -> NormalizedScore:
    """Average repeated observations from one provider for one candidate."""
    if len(observations) == 1:
        return observations[0]
    n = float(len(observations))
    first = observations[0]
    return NormalizedScore(
        provider_id=first.provider_id,
        candidate_id=first.candidate_id,
        score=sum(o.score for o in observations) / n,
        confidence=sum(o.confidence for o in observations) / n,
        reasoning=tuple(_dedupe_strings(o.reasoning for o in observations)),
    )


def _clamp01(x: float) -> float:
    return min(1.0, max(0.0, x))


# =============================================================================
# Fusion
# =============================================================================

def fuse_scores(
    scores: Iterable[NormalizedScore],
    weights: Mapping[str, float],
    provider_order: Sequence[str] = (),
) -> List[FusedCandidate]:
    """Fuse normalised scores per candidate.

    ``weights`` maps provider_id -> weight (> 0). Scores from providers with
    no configured weight are ignored. ``provider_order`` fixes the order in
    which reasoning strings are merged; it defaults to weight order.

    Output is sorted by (-fused_score, candidate_id) so it is deterministic
    even before the sort stage.
    """
    order = list(provider_order) or sorted(weights, key=lambda p: (-weights[p], p))
    rank_of: Dict[str, int] = {pid: i for i, pid in enumerate(order)}

    fused: List[FusedCandidate] = []
    ignored = 0
    for cid, by_provider in group_by_candidate(scores).items():
        contributions: List[NormalizedScore] = []
        for pid, observations in by_provider.items():
            w = weights.get(pid)
            if w is None or w <= 0:
                ignored += len(observations)
                continue
            contributions.append(_collapse(observations))

        if not contributions:
            continue

        contributions.sort(key=lambda c: (rank_of.get(c.provider_id, len(rank_of)), c.provider_id))
        total_w = sum(weights[c.provider_id] for c in contributions)
        if total_w <= FUSION_EPS:
            continue

        score = sum(c.score * weights[c.provider_id] for c in contributions) / total_w
        conf = sum(c.confidence * weights[c.provider_id] for c in contributions) / total_w

        fused.append(
            FusedCandidate(
                candidate_id=cid,
                fused_score=_clamp01(score),
                confidence=_clamp01(conf),
                contributing_signals=_dedupe_strings(c.reasoning for c in contributions),
                providers=[c.provider_id for c in contributions],
            )
        )

    if ignored:
        logger.warning("fuse_scores: ignored {} scores from unweighted providers", ignored)

    fused.sort(key=lambda f: (-f.fused_score, f.candidate_id))
    return fused
