import json

import pandas as pd

from signal_fusion.collaborators import (
    DataFrameContentStore,
    InMemoryRecentQueryLog,
    InMemoryUserProfileStore,
    load_candidates_snapshot,
    normalize_candidates_df,
    parse_tags,
)
from signal_fusion.config import DateRange


def test_parse_tags_accepts_loose_shapes():
    assert parse_tags("a, b ,,c") == ["a", "b", "c"]
    assert parse_tags([{"name": "x"}, "y", None, "x"]) == ["x", "y"]
    assert parse_tags(None) == []
    assert parse_tags(float("nan")) == []


def test_normalize_candidates_df_standardizes_and_default_fills():
    raw = pd.DataFrame(
        {
            "articleId": ["1", "2", "2", None, ""],
            "headline": ["First", "Second", "dup", "no id", "blank id"],
            "publishedAt": ["2024-05-01T10:00:00Z", "not a date", None, None, None],
            "popularity.views": ["12", -4, 3, 0, 0],
            "tags": ["a,b", [{"name": "c"}], None, None, None],
        }
    )
    df = normalize_candidates_df(raw)
    assert list(df["id"]) == ["1", "2"]
    assert list(df["title"]) == ["First", "Second"]
    assert list(df["views"]) == [12, 0]
    assert list(df["likes"]) == [0, 0]
    assert df["published_at"].iloc[0] == pd.Timestamp("2024-05-01T10:00:00Z")
    assert pd.isna(df["published_at"].iloc[1])
    assert list(df["tags"]) == [["a", "b"], ["c"]]
    assert list(df["excerpt"]) == ["", ""]


def test_normalize_without_id_column_is_empty():
    df = normalize_candidates_df(pd.DataFrame({"title": ["x"]}))
    assert df.empty


def test_load_snapshot_from_nested_json(tmp_path):
    path = tmp_path / "articles.json"
    path.write_text(
        json.dumps(
            {
                "articles": [
                    {
                        "id": 7,
                        "title": "Vision 2030",
                        "author": {"name": "Sara"},
                        "category": {"name": "Economy"},
                        "analytics": {"views": 100, "likes": 5, "shares": 1},
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    df = load_candidates_snapshot(path)
    row = df.iloc[0]
    assert row["id"] == "7"
    assert row["author"] == "Sara"
    assert row["category"] == "Economy"
    assert (row["views"], row["likes"], row["shares"]) == (100, 5, 1)


def test_content_store_fetch_and_version():
    store = DataFrameContentStore.from_records(
        [
            {"id": "a", "title": "A", "category": "Economy", "published_at": "2024-05-01T00:00:00Z"},
            {"id": "b", "title": "B", "category": "Sports", "published_at": "2024-05-10T00:00:00Z"},
            {"id": "c", "title": "C", "category": "economy"},
        ]
    )
    assert len(store) == 3
    assert [c.id for c in store.fetch_candidates()] == ["a", "b", "c"]
    assert [c.id for c in store.fetch_candidates(ids=["c", "a"])] == ["a", "c"]
    assert [c.id for c in store.fetch_candidates(category="ECONOMY")] == ["a", "c"]
    rng = DateRange(start="2024-05-05T00:00:00Z")
    assert [c.id for c in store.fetch_candidates(date_range=rng)] == ["b"]

    fetched = store.fetch_candidates(ids=["c"])[0]
    assert fetched.published_at is None
    assert fetched.tags == []

    v1 = store.version
    store.replace(pd.DataFrame({"id": ["z"], "title": ["Z"]}))
    assert store.version != v1
    assert [c.id for c in store.fetch_candidates()] == ["z"]


def test_profile_store_returns_copies():
    store = InMemoryUserProfileStore()
    store.put("u1", {"preferred_categories": ["Economy"]})
    got = store.get("u1")
    got["preferred_categories"] = []
    assert store.get("u1") == {"preferred_categories": ["Economy"]}
    assert store.get("missing") is None


def test_recent_query_log_is_bounded_most_recent_first_and_deduped():
    log = InMemoryRecentQueryLog(maxlen=3)
    for q in ["a", "b", " a ", "c", "d", ""]:
        log.append(q)
    assert log.recent() == ["d", "c", "a"]
    assert log.recent(1) == ["d"]


def test_priority_column_reaches_candidates():
    store = DataFrameContentStore.from_records(
        [{"id": "a", "title": "Alert", "urgency": "breaking"}, {"id": "b", "title": "Feature"}]
    )
    by_id = {c.id: c for c in store.fetch_candidates()}
    assert by_id["a"].priority == "breaking"
    assert by_id["b"].priority == ""
