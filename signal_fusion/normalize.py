from __future__ import annotations

"""
Normalisation helpers shared by the providers and the fusion step.

Two unrelated jobs live here because both are "bring loose inputs onto one
well-defined scale":

* fold_text / simple_tokenize
    Text folding for case-insensitive substring matching and a light
    Unicode-aware tokeniser (the corpus mixes Arabic and English).

* normalize_score / normalize_scores
    Map each provider's raw score from its declared scale onto [0, 1].
    Out-of-scale, non-finite or non-numeric scores are dropped with a
    warning, never raised.
"""

import math
import numbers
import re
import unicodedata
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from .pipeline_types import NormalizedScore, SignalScore

MAX_INPUT_CHARS = 20_000

_TOKEN_RE = re.compile(r"\w+", flags=re.UNICODE)

# Arabic diacritics (tashkeel) and tatweel do not change meaning for matching.
_ARABIC_MARKS_RE = re.compile(r"[\u064B-\u065F\u0670\u0640]")

_STOPWORDS = {
    "a", "an", "and", "the", "of", "to", "in", "on", "for", "with", "is", "at", "by",
    "في", "من", "على", "إلى", "عن", "و",
}


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("‘", "'").replace("’", "'")
    text = text.replace("“", '"').replace("”", '"')
    text = text.replace("–", "-").replace("—", "-")
    return _ARABIC_MARKS_RE.sub("", text)


def fold_text(text: Optional[str]) -> str:
    """Case-fold and whitespace-normalise text for substring matching."""
    if not text:
        return ""
    if not isinstance(text, str):
        text = str(text)
    if len(text) > MAX_INPUT_CHARS:
        text = text[:MAX_INPUT_CHARS]
    text = _normalise_unicode(text).casefold()
    return re.sub(r"\s+", " ", text).strip()


def simple_tokenize(text: Optional[str], drop_stopwords: bool = True) -> List[str]:
    """Split folded text into word tokens longer than one character."""
    tokens = [t for t in _TOKEN_RE.findall(fold_text(text)) if len(t) > 1]
    if drop_stopwords:
        tokens = [t for t in tokens if t not in _STOPWORDS]
    return tokens


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


def _clamp01(x: float) -> float:
    return min(1.0, max(0.0, x))


def _is_real(v: object) -> bool:
    return isinstance(v, numbers.Real) and not isinstance(v, bool)


def _real_pair(scale: object) -> Optional[Tuple[float, float]]:
    try:
        low, high = scale  # type: ignore[misc]
    except (TypeError, ValueError):
        return None
    if not (_is_real(low) and _is_real(high)):
        return None
    return float(low), float(high)


def normalize_score(score: SignalScore) -> Optional[NormalizedScore]:
    """Map ``score.raw_score`` from its declared scale onto [0, 1].

    Returns ``None`` (and logs a warning) when the score cannot be trusted:
    an inverted / degenerate scale, a value that is not a finite number,
    or a value outside the scale the provider itself declared.
    """
    scale = _real_pair(score.declared_scale)
    if scale is None:
        logger.warning(
            "Dropping {} score for {}: malformed scale {!r}",
            score.provider_id, score.candidate_id, score.declared_scale,
        )
        return None
    low, high = scale
    raw = score.raw_score

    if not (math.isfinite(low) and math.isfinite(high)) or high <= low:
        logger.warning(
            "Dropping {} score for {}: invalid scale {}",
            score.provider_id, score.candidate_id, score.declared_scale,
        )
        return None

    if not _is_real(raw) or not math.isfinite(raw):
        logger.warning(
            "Dropping {} score for {}: raw score {!r} is not a finite number",
            score.provider_id, score.candidate_id, raw,
        )
        return None

    if raw < low or raw > high:
        logger.warning(
            "Dropping {} score for {}: raw {} outside declared scale [{}, {}]",
            score.provider_id, score.candidate_id, raw, low, high,
        )
        return None

    conf = score.confidence
    if conf is not None and not _is_real(conf):
        logger.warning(
            "Dropping {} score for {}: confidence {!r} is not a number",
            score.provider_id, score.candidate_id, conf,
        )
        return None
    if conf is None or not math.isfinite(conf):
        conf = 0.0

    return NormalizedScore(
        provider_id=score.provider_id,
        candidate_id=score.candidate_id,
        score=_clamp01((raw - low) / (high - low)),
        confidence=_clamp01(conf),
        reasoning=tuple(score.reasoning),
    )


def normalize_scores(scores: Iterable[SignalScore]) -> List[NormalizedScore]:
    out: List[NormalizedScore] = []
    for s in scores:
        n = normalize_score(s)
        if n is not None:
            out.append(n)
    return out
