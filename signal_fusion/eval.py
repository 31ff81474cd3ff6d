# signal_fusion/eval.py
from __future__ import annotations

import argparse
import asyncio
import re
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Set

import numpy as np
import pandas as pd

from . import config
from .config import RankingRequest

# ---------- IO helpers ----------

def _read_any(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    df = pd.read_csv(path, encoding="utf-8")
    cols = {c.lower(): c for c in df.columns}
    qcol, icol = cols.get("query"), cols.get("candidate_id")
    if not qcol or not icol:
        raise ValueError(
            f"Expected columns 'Query' and 'Candidate_id'. Found: {list(df.columns)}"
        )
    return df.rename(columns={qcol: "Query", icol: "Candidate_id"})


def _normalize_query_key(q: str) -> str:
    """Same query with different whitespace maps to the same key."""
    q = str(q or "").strip()
    return re.sub(r"\s+", " ", q)


def build_gold_sets(gold_file: Path) -> Dict[str, Set[str]]:
    """normalized_query -> {relevant candidate ids}"""
    df = _read_any(gold_file)
    gold: Dict[str, Set[str]] = {}
    for _, row in df.iterrows():
        q_key = _normalize_query_key(row["Query"])
        cid = str(row["Candidate_id"]).strip()
        if q_key and cid:
            gold.setdefault(q_key, set()).add(cid)
    return gold


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for i in ids:
        if i and i not in seen:
            seen.add(i)
            out.append(i)
    return out

# ---------- metrics ----------

def recall_at_k(gold: Set[str], preds: List[str], k: int) -> float:
    if not gold:
        return 0.0
    top = set(preds[:k])
    hits = len(gold.intersection(top))
    return hits / float(len(gold))


def precision_at_k(gold: Set[str], preds: List[str], k: int) -> float:
    if k <= 0:
        return 0.0
    top = preds[:k]
    hits = sum(1 for p in top if p in gold)
    return hits / float(k)


def ndcg_at_k(gold: Set[str], preds: List[str], k: int) -> float:
    """Binary-relevance nDCG@k."""
    if not gold or k <= 0:
        return 0.0
    top = preds[:k]
    discounts = 1.0 / np.log2(np.arange(2, k + 2, dtype="float64"))
    gains = np.array([1.0 if p in gold else 0.0 for p in top], dtype="float64")
    dcg = float((gains * discounts[: len(gains)]).sum())
    ideal = float(discounts[: min(len(gold), k)].sum())
    return dcg / ideal if ideal > 0 else 0.0


METRICS: Dict[str, Callable[[Set[str], List[str], int], float]] = {
    "recall": recall_at_k,
    "precision": precision_at_k,
    "ndcg": ndcg_at_k,
}


def mean_metric_at_k(
    gold: Dict[str, Set[str]],
    preds: Dict[str, List[str]],
    k: int,
    metric: str = "recall",
) -> float:
    """Mean of ``metric`` over the queries present in both maps."""
    fn = METRICS[metric]
    vals = [fn(gold[q], _dedupe(p), k) for q, p in preds.items() if q in gold]
    return float(np.mean(vals)) if vals else 0.0


def evaluate(
    preds: Dict[str, List[str]],
    gold: Dict[str, Set[str]],
    ks=(1, 5, 10),
) -> Dict[str, Dict[int, float]]:
    """
    preds: normalized query -> candidate ids in rank order
    Returns {metric: {k: mean score}} for every metric in METRICS.
    """
    return {
        name: {k: mean_metric_at_k(gold, preds, k, metric=name) for k in ks}
        for name in METRICS
    }

# ---------- engine driver ----------

async def rank_queries(engine, queries: Iterable[str], k: int) -> Dict[str, List[str]]:
    preds: Dict[str, List[str]] = {}
    for q in queries:
        resp = await engine.rank(RankingRequest(query_text=q, max_results=k))
        preds[_normalize_query_key(q)] = [r.candidate_id for r in resp.results]
    return preds

# ---------- CLI ----------

def main():
    from .collaborators import DataFrameContentStore
    from .engine import build_default_engine

    ap = argparse.ArgumentParser()
    ap.add_argument("--gold_csv", type=Path, required=True,
                    help="CSV with columns Query,Candidate_id")
    ap.add_argument("--snapshot", type=Path, default=config.CANDIDATES_SNAPSHOT_PATH,
                    help="Candidate snapshot (json/csv/parquet)")
    ap.add_argument("--k", type=int, nargs="+", default=[1, 5, 10])
    args = ap.parse_args()

    gold = build_gold_sets(args.gold_csv)
    engine = build_default_engine(DataFrameContentStore.from_snapshot(args.snapshot), use_cache=False)
    preds = asyncio.run(rank_queries(engine, list(gold), max(args.k)))

    scores = evaluate(preds, gold, ks=args.k)
    for name, by_k in scores.items():
        for k in args.k:
            print(f"{name}@{k}: {by_k[k]:.4f}")


if __name__ == "__main__":
    main()
