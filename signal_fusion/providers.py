from __future__ import annotations

"""
Signal providers.

Every provider is a strategy behind :class:`SignalProvider`: it looks at the
request's candidate set and reports, per candidate, a raw score on its own
declared scale together with a confidence and human-readable reasoning.
Providers are pure functions of ``(candidates, request)``; they never mutate
candidates and never share state with one another, so the engine can run
them concurrently and cancel them freely. The shipped providers are CPU-bound
and implement ``score_batch``, which runs on a worker thread so a slow one
can be abandoned at its timeout without stalling the event loop.

Variants here:

* KeywordMatchProvider    field-weighted substring match, 0-100
* ModelEnsembleProvider   several sub-scorers fused by equal-weight average, 0-1
* TrendSignalProvider     recency decay x engagement velocity, 0-1
* PersonalizationProvider user-context preference match, 0-1

The semantic provider, which talks to an external relevance service, lives in
:mod:`signal_fusion.relevance`.
"""

import asyncio
import math
from abc import ABC
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from loguru import logger

from . import config
from .config import CandidateItem, RankingRequest
from .normalize import fold_text, simple_tokenize
from .pipeline_types import SCALE_PERCENT, SCALE_UNIT, Scale, SignalScore


def request_now(request: RankingRequest) -> datetime:
    now = request.now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now


def age_hours(candidate: CandidateItem, now: datetime) -> Optional[float]:
    if candidate.published_at is None:
        return None
    return max(0.0, (now - candidate.published_at).total_seconds() / 3600.0)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class SignalProvider(ABC):
    """Base class for all relevance signal providers."""

    provider_id: str = ""
    declared_scale: Scale = SCALE_UNIT

    async def compute(
        self,
        candidates: Sequence[CandidateItem],
        request: RankingRequest,
    ) -> List[SignalScore]:
        """Score ``candidates`` for ``request``. Raise on failure.

        Providers that wait on I/O override this coroutine and must not block
        the event loop. CPU-bound providers implement :meth:`score_batch`
        instead; it runs in a worker thread so the engine can stop waiting
        for it at its timeout.
        """
        return await asyncio.to_thread(self.score_batch, candidates, request)

    def score_batch(
        self,
        candidates: Sequence[CandidateItem],
        request: RankingRequest,
    ) -> List[SignalScore]:
        raise NotImplementedError(f"{type(self).__name__} implements neither compute nor score_batch")

    async def run(
        self,
        candidates: Sequence[CandidateItem],
        request: RankingRequest,
    ) -> List[SignalScore]:
        """Compute and check the output contract.

        Items that are not :class:`SignalScore`, scores for ids outside the
        candidate set or attributed to another provider, and scores without
        reasoning are dropped. Numeric checks happen at normalisation.
        """
        scores = await self.compute(candidates, request)
        known = {c.id for c in candidates}
        kept: List[SignalScore] = []
        dropped = 0
        for s in scores or ():
            if (
                not isinstance(s, SignalScore)
                or s.candidate_id not in known
                or s.provider_id != self.provider_id
                or not isinstance(s.reasoning, (tuple, list))
                or not s.reasoning
            ):
                dropped += 1
                continue
            kept.append(s)
        if dropped:
            logger.warning("{}: dropped {} scores violating the provider contract", self.provider_id, dropped)
        return kept

    def _score(
        self,
        candidate_id: str,
        raw: float,
        confidence: float,
        reasoning: Sequence[str],
    ) -> SignalScore:
        return SignalScore(
            provider_id=self.provider_id,
            candidate_id=candidate_id,
            raw_score=float(raw),
            declared_scale=self.declared_scale,
            confidence=float(confidence),
            reasoning=tuple(reasoning),
        )


# ---------------------------------------------------------------------------
# Keyword match
# ---------------------------------------------------------------------------

class KeywordMatchProvider(SignalProvider):
    """
    Case-insensitive substring match of the whole query against candidate
    fields. Every candidate gets a score; "no match" is reported as 0, not
    omitted.
    """

    provider_id = config.PROVIDER_KEYWORD
    declared_scale = SCALE_PERCENT

    MATCH_CONFIDENCE = 1.0
    NO_MATCH_CONFIDENCE = 0.5

    def __init__(
        self,
        field_weights: Optional[Dict[str, float]] = None,
        cap: float = config.KEYWORD_SCORE_CAP,
    ) -> None:
        self.field_weights = dict(field_weights or config.KEYWORD_FIELD_WEIGHTS)
        self.cap = cap

    def _field_texts(self, c: CandidateItem) -> Dict[str, List[str]]:
        return {
            "title": [c.title],
            "content": [c.body_text],
            "tags": list(c.tags),
            "category": [c.category],
            "author": [c.author],
        }

    def score_batch(self, candidates, request):
        query = fold_text(request.query_text)
        out: List[SignalScore] = []
        for c in candidates:
            if not query:
                out.append(self._score(c.id, 0.0, self.NO_MATCH_CONFIDENCE, ["empty query"]))
                continue

            raw = 0.0
            reasons: List[str] = []
            for field, texts in self._field_texts(c).items():
                w = self.field_weights.get(field, 0.0)
                if w <= 0:
                    continue
                if any(query in fold_text(t) for t in texts if t):
                    raw += w
                    reasons.append(f"{field} match")

            raw = min(raw, self.cap)
            if reasons:
                out.append(self._score(c.id, raw, self.MATCH_CONFIDENCE, reasons))
            else:
                out.append(self._score(c.id, 0.0, self.NO_MATCH_CONFIDENCE, ["no keyword match"]))
        return out


# ---------------------------------------------------------------------------
# Model ensemble
# ---------------------------------------------------------------------------

SubScore = Tuple[float, float, List[str]]


class SubScorer(Protocol):
    name: str

    def score(self, candidate: CandidateItem, request: RankingRequest) -> Optional[SubScore]:
        """Return (score in [0,1], confidence in [0,1], reasoning) or None for no opinion."""


class ContentSimilarityScorer:
    """Token overlap between the query (plus user interests) and the candidate."""

    name = "content_similarity"
    confidence = 0.8

    def score(self, candidate, request):
        terms = simple_tokenize(request.query_text)
        if request.user_context is not None:
            for interest in request.user_context.interests:
                terms.extend(simple_tokenize(interest))
        terms = list(dict.fromkeys(terms))
        if not terms:
            return None
        doc = set(
            simple_tokenize(
                " ".join([candidate.title, candidate.excerpt, candidate.category, " ".join(candidate.tags)])
            )
        )
        hits = [t for t in terms if t in doc]
        s = len(hits) / float(len(terms))
        if hits:
            reason = f"content overlaps on {', '.join(hits[:3])}"
        else:
            reason = "no content overlap"
        return s, self.confidence, [reason]


class EngagementScorer:
    name = "engagement"
    confidence = 0.6

    def score(self, candidate, request):
        p = candidate.popularity
        s = (
            min(p.views / config.ENGAGEMENT_VIEWS_NORM, 1.0)
            + min(p.likes / config.ENGAGEMENT_LIKES_NORM, 1.0)
            + min(p.shares / config.ENGAGEMENT_SHARES_NORM, 1.0)
        ) / 3.0
        label = "highly engaged audience" if s >= 0.7 else "audience engagement considered"
        return s, self.confidence, [label]


class ContextualRecencyScorer:
    """(linear 7-day recency + capped view share) / 2."""

    name = "contextual_recency"
    confidence = 0.7

    def score(self, candidate, request):
        age = age_hours(candidate, request_now(request))
        if age is None:
            return None
        recency = max(0.0, 1.0 - age / config.RECENCY_WINDOW_HOURS)
        engagement = min(candidate.popularity.views / config.ENGAGEMENT_VIEWS_NORM, 1.0)
        s = (recency + engagement) / 2.0
        label = "timely for the current context" if recency > 0 else "older content"
        return s, self.confidence, [label]


class EditorialPriorityScorer:
    """Editors flag breaking stories; anything else gets no opinion."""

    name = "editorial_priority"
    confidence = 0.9

    def score(self, candidate, request):
        if fold_text(candidate.priority) not in config.BREAKING_PRIORITIES:
            return None
        return 1.0, self.confidence, ["breaking news"]


DEFAULT_SUB_SCORERS = (
    ContentSimilarityScorer,
    EngagementScorer,
    ContextualRecencyScorer,
    EditorialPriorityScorer,
)


class ModelEnsembleProvider(SignalProvider):
    """
    Runs several sub-scorers and fuses them before reporting one score per
    candidate: equal-weight mean of sub-scores and sub-confidences, union of
    reasoning. Same fusion pattern as the engine, one level down, so a
    sub-scorer with no opinion is simply left out of the mean.
    """

    provider_id = config.PROVIDER_ENSEMBLE
    declared_scale = SCALE_UNIT

    def __init__(self, sub_scorers: Optional[Sequence[SubScorer]] = None) -> None:
        self.sub_scorers = list(sub_scorers) if sub_scorers is not None else [cls() for cls in DEFAULT_SUB_SCORERS]

    def score_batch(self, candidates, request):
        out: List[SignalScore] = []
        failures: Dict[str, int] = {}
        for c in candidates:
            results: List[SubScore] = []
            for scorer in self.sub_scorers:
                try:
                    r = scorer.score(c, request)
                except Exception as e:
                    failures[scorer.name] = failures.get(scorer.name, 0) + 1
                    logger.debug("ensemble sub-scorer {} failed on {}: {}", scorer.name, c.id, e)
                    continue
                if r is not None:
                    results.append(r)

            if not results:
                continue

            n = float(len(results))
            s = sum(min(1.0, max(0.0, r[0])) for r in results) / n
            conf = sum(min(1.0, max(0.0, r[1])) for r in results) / n
            reasons = list(dict.fromkeys(reason for r in results for reason in r[2] if reason))
            out.append(self._score(c.id, s, conf, reasons))

        for name, count in failures.items():
            logger.warning("ensemble sub-scorer {} failed on {} candidates", name, count)
        return out


# ---------------------------------------------------------------------------
# Trend
# ---------------------------------------------------------------------------

class TrendSignalProvider(SignalProvider):
    """
    score = exp(-ln2 * age / half_life) * velocity / max(velocity)

    velocity = (views + 5*likes + 10*shares) / max(age_hours, 1). The max is
    taken over the request's candidate set. Candidates without a publish date
    get no score.
    """

    provider_id = config.PROVIDER_TREND
    declared_scale = SCALE_UNIT

    CONFIDENCE_SATURATION = 10_000.0

    def __init__(self, half_life_hours: float = config.TREND_HALF_LIFE_HOURS) -> None:
        if half_life_hours <= 0:
            raise ValueError("half_life_hours must be > 0")
        self.half_life_hours = half_life_hours

    def score_batch(self, candidates, request):
        now = request_now(request)
        dated = [(c, age_hours(c, now)) for c in candidates]
        dated = [(c, a) for c, a in dated if a is not None]
        if not dated:
            return []

        ages = np.array([a for _, a in dated], dtype="float64")
        engagement = np.array(
            [
                c.popularity.views
                + config.TREND_LIKE_WEIGHT * c.popularity.likes
                + config.TREND_SHARE_WEIGHT * c.popularity.shares
                for c, _ in dated
            ],
            dtype="float64",
        )
        velocity = engagement / np.maximum(ages, 1.0)
        vmax = float(velocity.max())
        velocity_norm = velocity / vmax if vmax > 0 else np.zeros_like(velocity)
        decay = np.exp(-math.log(2.0) * ages / self.half_life_hours)
        scores = np.clip(decay * velocity_norm, 0.0, 1.0)
        confidence = np.minimum(1.0, np.log1p(engagement) / math.log1p(self.CONFIDENCE_SATURATION))

        out: List[SignalScore] = []
        for (c, age), s, conf, v in zip(dated, scores, confidence, velocity):
            out.append(
                self._score(
                    c.id,
                    float(s),
                    float(conf),
                    [f"trending at {v:.1f} interactions/hour, {age:.0f}h old"],
                )
            )
        return out


# ---------------------------------------------------------------------------
# Personalisation
# ---------------------------------------------------------------------------

class PersonalizationProvider(SignalProvider):
    """
    Preference match against ``request.user_context``: preferred category,
    reading length, followed author, previously liked. No user context means
    no scores at all (absent, not zero).
    """

    provider_id = config.PROVIDER_PERSONALIZATION
    declared_scale = SCALE_UNIT

    @staticmethod
    def _reading_bucket(candidate: CandidateItem) -> str:
        words = len(candidate.body_text.split())
        minutes = words / float(config.READING_WORDS_PER_MINUTE)
        if minutes < 3:
            return "short"
        if minutes <= 8:
            return "medium"
        return "long"

    def score_batch(self, candidates, request):
        ctx = request.user_context
        if ctx is None or not ctx.has_profile():
            return []

        categories = {fold_text(x) for x in ctx.preferred_categories}
        authors = {fold_text(x) for x in ctx.followed_authors}
        liked = set(ctx.liked_ids)
        facets = sum(
            1 for f in (categories, authors, liked, ctx.reading_time) if f
        )
        confidence = min(1.0, 0.4 + 0.15 * facets)

        out: List[SignalScore] = []
        for c in candidates:
            s = 0.0
            reasons: List[str] = []
            if c.category and fold_text(c.category) in categories:
                s += config.PERSONAL_CATEGORY_BONUS
                reasons.append(f"matches preferred category {c.category}")
            if ctx.reading_time and self._reading_bucket(c) == ctx.reading_time:
                s += config.PERSONAL_READING_TIME_BONUS
                reasons.append(f"fits {ctx.reading_time} reading time")
            if c.author and fold_text(c.author) in authors:
                s += config.PERSONAL_AUTHOR_BONUS
                reasons.append(f"by followed author {c.author}")
            if c.id in liked:
                s += config.PERSONAL_LIKED_BONUS
                reasons.append("previously liked")
            if not reasons:
                reasons.append("no personal preference match")
            out.append(self._score(c.id, min(s, 1.0), confidence, reasons))
        return out
