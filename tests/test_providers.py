import asyncio
import math
import threading
from datetime import datetime, timedelta, timezone

import pytest

from signal_fusion.config import CandidateItem, RankingRequest, UserContext
from signal_fusion.pipeline_types import SCALE_UNIT, SignalScore
from signal_fusion.providers import (
    ContextualRecencyScorer,
    EditorialPriorityScorer,
    KeywordMatchProvider,
    ModelEnsembleProvider,
    PersonalizationProvider,
    SignalProvider,
    TrendSignalProvider,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _item(cid, **kw):
    return CandidateItem(id=cid, **kw)


def _run(provider, candidates, request):
    return asyncio.run(provider.run(candidates, request))


# ---------------------------------------------------------------------------
# Keyword
# ---------------------------------------------------------------------------

def test_keyword_scores_every_candidate_including_zero():
    cands = [_item("A", title="Vision 2030 plan"), _item("B", title="Sports update")]
    scores = {s.candidate_id: s for s in _run(KeywordMatchProvider(), cands, RankingRequest(query_text="Vision 2030"))}
    assert set(scores) == {"A", "B"}
    assert scores["A"].raw_score == 50.0
    assert scores["A"].reasoning == ("title match",)
    assert scores["B"].raw_score == 0.0
    assert scores["B"].reasoning == ("no keyword match",)
    assert scores["A"].declared_scale == (0.0, 100.0)


def test_keyword_is_case_insensitive_and_uses_field_weights():
    c = _item("A", title="x", excerpt="About ECONOMY reform", tags=["Economy"], category="economy")
    (s,) = _run(KeywordMatchProvider(), [c], RankingRequest(query_text="economy"))
    # content (excerpt fallback) 30 + tags 20 + category 15
    assert s.raw_score == 65.0
    assert set(s.reasoning) == {"content match", "tags match", "category match"}


def test_keyword_caps_at_100():
    c = _item("A", title="news", content="news", tags=["news"], category="news", author="news")
    (s,) = _run(KeywordMatchProvider(), [c], RankingRequest(query_text="News"))
    assert s.raw_score == 100.0


def test_keyword_empty_query_scores_zero():
    (s,) = _run(KeywordMatchProvider(), [_item("A", title="t")], RankingRequest(query_text="   "))
    assert s.raw_score == 0.0
    assert s.reasoning == ("empty query",)


class _SloppyProvider(SignalProvider):
    provider_id = "sloppy"

    async def compute(self, candidates, request):
        return [
            self._score("A", 0.5, 1.0, ["ok"]),
            self._score("not-a-candidate", 0.5, 1.0, ["ok"]),
            self._score("A", 0.5, 1.0, []),
        ]


def test_run_drops_scores_breaking_the_contract():
    out = _run(_SloppyProvider(), [_item("A")], RankingRequest())
    assert len(out) == 1
    assert out[0].candidate_id == "A"


class _ThreadRecorder(SignalProvider):
    provider_id = "recorder"

    def __init__(self):
        self.thread = None

    def score_batch(self, candidates, request):
        self.thread = threading.get_ident()
        return [self._score(c.id, 0.5, 1.0, ["seen"]) for c in candidates]


def test_score_batch_runs_off_the_event_loop_thread():
    p = _ThreadRecorder()
    out = _run(p, [_item("A")], RankingRequest())
    assert [s.candidate_id for s in out] == ["A"]
    assert p.thread is not None
    assert p.thread != threading.get_ident()


def test_provider_without_scoring_hook_raises():
    class Hollow(SignalProvider):
        provider_id = "hollow"

    with pytest.raises(NotImplementedError):
        _run(Hollow(), [_item("A")], RankingRequest())


class _MalformedProvider(SignalProvider):
    provider_id = "malformed"

    async def compute(self, candidates, request):
        return [
            {"candidate_id": "A", "raw_score": 0.5},
            SignalScore("malformed", "A", 0.5, SCALE_UNIT, 1.0, "not a tuple"),
            SignalScore("malformed", "A", 0.5, SCALE_UNIT, 1.0, ("fine",)),
        ]


def test_run_drops_items_that_are_not_signal_scores():
    out = _run(_MalformedProvider(), [_item("A")], RankingRequest())
    assert [s.reasoning for s in out] == [("fine",)]


# ---------------------------------------------------------------------------
# Ensemble
# ---------------------------------------------------------------------------

def test_ensemble_equal_weight_sub_fusion():
    c = _item(
        "A",
        title="Vision update",
        published_at=NOW - timedelta(hours=24),
        popularity={"views": 500},
    )
    req = RankingRequest(query_text="vision", now=NOW)
    (s,) = _run(ModelEnsembleProvider(), [c], req)

    similarity = 1.0
    engagement = 0.5 / 3.0
    recency = ((1.0 - 24.0 / 168.0) + 0.5) / 2.0
    assert abs(s.raw_score - (similarity + engagement + recency) / 3.0) < 1e-9
    assert abs(s.confidence - (0.8 + 0.6 + 0.7) / 3.0) < 1e-9
    assert "content overlaps on vision" in s.reasoning
    assert len(s.reasoning) == len(set(s.reasoning))


class _Boom:
    name = "boom"

    def score(self, candidate, request):
        raise RuntimeError("model offline")


class _Fixed:
    name = "fixed"

    def __init__(self, value, reason):
        self.value = value
        self.reason = reason

    def score(self, candidate, request):
        return self.value, 1.0, [self.reason]


def test_ensemble_skips_failing_sub_scorer_and_dedupes_reasoning():
    p = ModelEnsembleProvider(sub_scorers=[_Fixed(0.2, "same"), _Boom(), _Fixed(0.6, "same")])
    (s,) = _run(p, [_item("A")], RankingRequest())
    assert abs(s.raw_score - 0.4) < 1e-9
    assert s.reasoning == ("same",)


def test_ensemble_without_any_opinion_emits_nothing():
    # recency has no opinion on undated items
    p = ModelEnsembleProvider(sub_scorers=[ContextualRecencyScorer()])
    assert _run(p, [_item("A")], RankingRequest(now=NOW)) == []


def test_editorial_priority_boosts_breaking_stories_only():
    scorer = EditorialPriorityScorer()
    req = RankingRequest(now=NOW)
    assert scorer.score(_item("A", priority="Breaking"), req) == (1.0, 0.9, ["breaking news"])
    assert scorer.score(_item("B", priority="normal"), req) is None
    assert scorer.score(_item("C"), req) is None


def test_breaking_story_outranks_plain_one_in_default_ensemble():
    plain = _item("plain", title="Budget update")
    breaking = _item("breaking", title="Budget update", priority="breaking")
    scores = {s.candidate_id: s for s in _run(ModelEnsembleProvider(), [plain, breaking], RankingRequest(query_text="budget"))}
    assert scores["breaking"].raw_score > scores["plain"].raw_score
    assert "breaking news" in scores["breaking"].reasoning
    assert "breaking news" not in scores["plain"].reasoning


# ---------------------------------------------------------------------------
# Trend
# ---------------------------------------------------------------------------

def test_trend_decay_times_normalized_velocity():
    fresh = _item("fresh", published_at=NOW - timedelta(hours=2), popularity={"views": 1000})
    old = _item("old", published_at=NOW - timedelta(hours=100), popularity={"views": 1000})
    undated = _item("undated", popularity={"views": 10_000})
    scores = {
        s.candidate_id: s
        for s in _run(TrendSignalProvider(half_life_hours=48), [fresh, old, undated], RankingRequest(now=NOW))
    }

    assert set(scores) == {"fresh", "old"}
    # fresh has the max velocity -> normalised velocity 1
    assert abs(scores["fresh"].raw_score - math.exp(-math.log(2) * 2 / 48)) < 1e-9
    expected_old = math.exp(-math.log(2) * 100 / 48) * (10.0 / 500.0)
    assert abs(scores["old"].raw_score - expected_old) < 1e-9
    assert scores["fresh"].reasoning[0].startswith("trending at 500.0 interactions/hour")


def test_trend_all_zero_engagement_scores_zero():
    c = _item("A", published_at=NOW - timedelta(hours=1))
    (s,) = _run(TrendSignalProvider(), [c], RankingRequest(now=NOW))
    assert s.raw_score == 0.0


# ---------------------------------------------------------------------------
# Personalisation
# ---------------------------------------------------------------------------

def test_personalization_absent_without_context():
    assert _run(PersonalizationProvider(), [_item("A")], RankingRequest()) == []
    empty_ctx = RankingRequest(user_context=UserContext(user_id="u1"))
    assert _run(PersonalizationProvider(), [_item("A")], empty_ctx) == []


def test_personalization_bonuses():
    ctx = UserContext(preferred_categories=["Economy"], liked_ids=["A"], reading_time="short")
    cands = [
        _item("A", category="economy", content="word " * 100),
        _item("B", category="sports", content="word " * 2000),
    ]
    scores = {s.candidate_id: s for s in _run(PersonalizationProvider(), cands, RankingRequest(user_context=ctx))}
    # category 0.4 + short read 0.3 + liked 0.1
    assert abs(scores["A"].raw_score - 0.8) < 1e-9
    assert scores["B"].raw_score == 0.0
    assert scores["B"].reasoning == ("no personal preference match",)
    # three populated preference facets
    assert abs(scores["A"].confidence - 0.85) < 1e-9
