import asyncio

from signal_fusion.collaborators import DataFrameContentStore
from signal_fusion.config import ProviderConfig
from signal_fusion.engine import RankingEngine
from signal_fusion.eval import (
    build_gold_sets,
    evaluate,
    mean_metric_at_k,
    ndcg_at_k,
    precision_at_k,
    rank_queries,
    recall_at_k,
)
from signal_fusion.providers import KeywordMatchProvider


def test_recall_at_k_basic():
    gold = {"a", "b", "c"}
    preds = ["x", "b", "c", "y"]
    r = recall_at_k(gold, preds, k=3)
    # in top-3 preds we have b and c -> 2/3
    assert abs(r - (2 / 3)) < 1e-6


def test_precision_at_k():
    assert precision_at_k({"a"}, ["a", "b"], k=2) == 0.5
    assert precision_at_k({"a"}, ["a"], k=0) == 0.0


def test_ndcg_at_k_perfect_and_shifted():
    assert abs(ndcg_at_k({"a", "b"}, ["a", "b", "c"], k=3) - 1.0) < 1e-9
    shifted = ndcg_at_k({"a"}, ["x", "a"], k=2)
    assert abs(shifted - 1.0 / 1.5849625007211563) < 1e-6
    assert ndcg_at_k(set(), ["a"], k=1) == 0.0


def test_mean_metric_multiple_queries():
    gold = {
        "q1": {"a", "b"},
        "q2": {"x"},
    }
    preds = {
        "q1": ["a", "z"],
        "q2": ["y", "x"],
        "q3": ["ignored"],
    }
    # q1: 1/2, q2: 1/1 -> mean = 0.75
    assert abs(mean_metric_at_k(gold, preds, k=2) - 0.75) < 1e-6


def test_evaluate_reports_every_metric():
    scores = evaluate({"q": ["a", "b"]}, {"q": {"a"}}, ks=(1, 2))
    assert set(scores) == {"recall", "precision", "ndcg"}
    assert scores["recall"] == {1: 1.0, 2: 1.0}
    assert scores["precision"][2] == 0.5


def test_build_gold_sets_and_rank_queries(tmp_path):
    gold_csv = tmp_path / "gold.csv"
    gold_csv.write_text("Query,Candidate_id\nVision  2030,A\nVision 2030,C\n", encoding="utf-8")
    gold = build_gold_sets(gold_csv)
    assert gold == {"Vision 2030": {"A", "C"}}

    store = DataFrameContentStore.from_records(
        [{"id": "A", "title": "Vision 2030 plan"}, {"id": "B", "title": "Sports"}]
    )
    engine = RankingEngine(
        [KeywordMatchProvider()], store, provider_configs=[ProviderConfig(provider_id="keyword")]
    )
    preds = asyncio.run(rank_queries(engine, list(gold), k=1))
    assert preds == {"Vision 2030": ["A"]}
    assert evaluate(preds, gold, ks=(1,))["recall"][1] == 0.5
