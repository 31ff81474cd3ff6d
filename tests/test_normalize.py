import math

import numpy as np

from signal_fusion.normalize import (
    MAX_INPUT_CHARS,
    fold_text,
    normalize_score,
    normalize_scores,
    simple_tokenize,
)
from signal_fusion.pipeline_types import SCALE_PERCENT, SCALE_UNIT, SignalScore


def _sig(raw, scale=SCALE_PERCENT, conf=0.8, pid="keyword", cid="a"):
    return SignalScore(
        provider_id=pid,
        candidate_id=cid,
        raw_score=raw,
        declared_scale=scale,
        confidence=conf,
        reasoning=("title match",),
    )


def test_fold_text_casefolds_and_collapses_whitespace():
    assert fold_text("  Vision   2030\nPLAN ") == "vision 2030 plan"
    assert fold_text(None) == ""


def test_fold_text_strips_arabic_diacritics_but_keeps_digits():
    # fatha + tatweel removed; Arabic-Indic digits survive
    assert fold_text("رُؤيـة ٢٠٣٠") == fold_text("رؤية ٢٠٣٠")
    assert "٢٠٣٠" in fold_text("رؤية ٢٠٣٠")


def test_fold_text_clamps_length():
    assert len(fold_text("x" * (MAX_INPUT_CHARS + 100))) == MAX_INPUT_CHARS


def test_simple_tokenize_drops_stopwords_and_single_chars():
    tokens = simple_tokenize("The plan for a Vision 2030 economy")
    assert "the" not in tokens
    assert "for" not in tokens
    assert "a" not in tokens
    assert tokens == ["plan", "vision", "2030", "economy"]


def test_normalize_percent_scale_divides_by_100():
    n = normalize_score(_sig(65.0))
    assert n is not None
    assert abs(n.score - 0.65) < 1e-9
    assert n.confidence == 0.8
    assert n.reasoning == ("title match",)


def test_normalize_unit_scale_passes_through():
    n = normalize_score(_sig(0.42, scale=SCALE_UNIT))
    assert n is not None
    assert abs(n.score - 0.42) < 1e-9


def test_normalize_drops_out_of_scale_score():
    assert normalize_score(_sig(101.0)) is None
    assert normalize_score(_sig(-0.1, scale=SCALE_UNIT)) is None


def test_normalize_drops_non_finite_and_bad_scale():
    assert normalize_score(_sig(math.nan)) is None
    assert normalize_score(_sig(math.inf)) is None
    assert normalize_score(_sig(0.5, scale=(1.0, 1.0))) is None
    assert normalize_score(_sig(0.5, scale=(1.0, 0.0))) is None


def test_normalize_drops_non_numeric_fields():
    assert normalize_score(_sig("0.5", scale=SCALE_UNIT)) is None
    assert normalize_score(_sig(None)) is None
    assert normalize_score(_sig(True, scale=SCALE_UNIT)) is None
    assert normalize_score(_sig(50.0, conf="high")) is None
    assert normalize_score(_sig(0.5, scale=("0", "1"))) is None
    assert normalize_score(_sig(0.5, scale=None)) is None
    assert normalize_score(_sig(0.5, scale=(0.0, 1.0, 2.0))) is None


def test_normalize_accepts_numpy_numbers():
    n = normalize_score(_sig(np.float64(25.0), conf=np.float32(0.5)))
    assert n.score == 0.25
    assert n.confidence == 0.5


def test_normalize_clamps_confidence():
    assert normalize_score(_sig(50.0, conf=3.0)).confidence == 1.0
    assert normalize_score(_sig(50.0, conf=-1.0)).confidence == 0.0
    assert normalize_score(_sig(50.0, conf=math.nan)).confidence == 0.0


def test_normalize_scores_keeps_valid_only():
    out = normalize_scores([_sig(10.0, cid="a"), _sig(500.0, cid="b"), _sig(0.0, cid="c")])
    assert [n.candidate_id for n in out] == ["a", "c"]
    assert out[1].score == 0.0
