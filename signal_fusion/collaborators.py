from __future__ import annotations

import hashlib
import json
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, Sequence

import pandas as pd
from loguru import logger
from pydantic import ValidationError

from .config import CANDIDATES_SNAPSHOT_PATH, RECENT_QUERY_LOG_SIZE, CandidateItem, DateRange


# ---------------------------
# Collaborator interfaces
# ---------------------------

class ContentStore(Protocol):
    """Read-only access to the content corpus."""

    @property
    def version(self) -> str: ...

    def fetch_candidates(
        self,
        ids: Optional[Sequence[str]] = None,
        category: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> List[CandidateItem]: ...


class ExternalRelevanceService(Protocol):
    """Black-box relevance scorer; returns JSON-shaped entries."""

    async def score(self, candidates: Sequence[CandidateItem], query_text: str) -> List[Dict[str, Any]]: ...


class UserProfileStore(Protocol):
    def get(self, user_id: str) -> Optional[Dict[str, Any]]: ...


class RecentQueryLog(Protocol):
    def append(self, query_text: str) -> None: ...


# ---------------------------
# Column detection / standardization
# ---------------------------

# Upstream exports disagree on naming (camelCase from the dashboard, snake_case
# from the API, nested analytics flattened by json_normalize).
COLUMN_CANDIDATES: Dict[str, List[str]] = {
    "id": ["id", "article_id", "articleId", "item_id"],
    "title": ["title", "name", "headline"],
    "excerpt": ["excerpt", "summary", "description"],
    "content": ["content", "body", "text"],
    "category": ["category", "category.name", "category_name", "section"],
    "author": ["author", "author.name", "author_name", "byline"],
    "published_at": ["published_at", "publishedAt", "created_at", "createdAt", "date"],
    "views": ["views", "popularity.views", "analytics.views"],
    "likes": ["likes", "popularity.likes", "analytics.likes"],
    "shares": ["shares", "popularity.shares", "analytics.shares"],
    "tags": ["tags", "tag_names", "keywords"],
    "priority": ["priority", "urgency"],
}

CANONICAL_COLUMNS = [
    "id", "title", "excerpt", "content", "category", "author",
    "published_at", "views", "likes", "shares", "tags", "priority",
]


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    col_map: Dict[str, str] = {}
    lower_to_original = {str(c).lower(): c for c in df.columns}

    for canon, candidates in COLUMN_CANDIDATES.items():
        for candidate in candidates:
            if candidate in df.columns:
                col_map[candidate] = canon
                break
            if candidate.lower() in lower_to_original:
                col_map[lower_to_original[candidate.lower()]] = canon
                break

    logger.debug("Standardizing candidate columns with map: {}", col_map)
    return df.rename(columns=col_map)


def parse_tags(value: Any) -> List[str]:
    """Tags arrive as lists of strings, lists of {"name": ...} dicts, or CSV strings."""
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    out: List[str] = []
    try:
        items = list(value)
    except TypeError:
        return [str(value).strip()] if str(value).strip() else []
    for t in items:
        if isinstance(t, dict):
            t = t.get("name") or t.get("label") or ""
        t = str(t).strip() if t is not None else ""
        if t and t not in out:
            out.append(t)
    return out


def normalize_candidates_df(df_raw: pd.DataFrame) -> pd.DataFrame:
    """
    Turn a loosely-shaped export into the canonical candidate frame.

    Rows without an id are dropped, duplicate ids keep their first row,
    missing text becomes "", counts are coerced to non-negative ints and
    dates to UTC timestamps (NaT when unparseable).
    """
    logger.info("Normalizing candidate dataframe with {} raw rows", len(df_raw))
    df = _standardize_columns(df_raw.copy())

    if "id" not in df.columns:
        logger.error("No id column found after standardization; candidate set will be empty.")
        return pd.DataFrame(columns=CANONICAL_COLUMNS)

    df["id"] = df["id"].astype(str).str.strip()
    df = df[(df["id"] != "") & (df["id"].str.lower() != "nan") & (df["id"].str.lower() != "none")]
    df = df.drop_duplicates(subset=["id"]).reset_index(drop=True)

    for col in ("title", "excerpt", "content", "category", "author", "priority"):
        if col in df.columns:
            df[col] = df[col].fillna("").astype(str)
        else:
            df[col] = ""

    for col in ("views", "likes", "shares"):
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0).clip(lower=0).astype(int)
        else:
            df[col] = 0

    if "published_at" in df.columns:
        df["published_at"] = pd.to_datetime(df["published_at"], utc=True, errors="coerce", format="mixed")
    else:
        df["published_at"] = pd.NaT

    if "tags" in df.columns:
        df["tags"] = df["tags"].apply(parse_tags)
    else:
        df["tags"] = [[] for _ in range(len(df))]

    out = df[CANONICAL_COLUMNS]
    logger.info("Candidate normalization complete. Final rows: {}", len(out))
    return out


def load_candidates_snapshot(path: Path = CANDIDATES_SNAPSHOT_PATH) -> pd.DataFrame:
    """Load a JSON / CSV / Parquet export and normalize it."""
    if not path.exists():
        raise FileNotFoundError(f"Candidate snapshot not found: {path}")
    logger.info("Loading candidate snapshot from {}", path)
    ext = path.suffix.lower()
    if ext == ".parquet":
        df = pd.read_parquet(path)
    elif ext == ".csv":
        df = pd.read_csv(path, encoding="utf-8")
    else:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        if isinstance(raw, dict):
            raw = raw.get("articles") or raw.get("items") or []
        df = pd.json_normalize(raw)
    return normalize_candidates_df(df)


# ---------------------------
# In-memory reference implementations
# ---------------------------

def _row_to_candidate(row: Dict[str, Any]) -> CandidateItem:
    published = row.get("published_at")
    if published is not None and pd.isna(published):
        published = None
    elif isinstance(published, pd.Timestamp):
        published = published.to_pydatetime()
    return CandidateItem.model_validate(
        {
            "id": row.get("id"),
            "title": row.get("title"),
            "excerpt": row.get("excerpt"),
            "content": row.get("content"),
            "category": row.get("category"),
            "author": row.get("author"),
            "published_at": published,
            "popularity": {
                "views": row.get("views", 0),
                "likes": row.get("likes", 0),
                "shares": row.get("shares", 0),
            },
            "tags": row.get("tags"),
            "priority": row.get("priority"),
        }
    )


def _frame_version(df: pd.DataFrame) -> str:
    h = hashlib.sha1()
    h.update(str(len(df)).encode("utf-8"))
    cols = ["id", "title", "published_at", "views", "likes", "shares", "priority"]
    h.update(df[cols].to_csv(index=False).encode("utf-8"))
    return h.hexdigest()[:16]


class DataFrameContentStore:
    """ContentStore over a canonical candidate DataFrame."""

    def __init__(self, df: pd.DataFrame, version: Optional[str] = None) -> None:
        self._df = normalize_candidates_df(df)
        self._version = version or _frame_version(self._df)

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]], version: Optional[str] = None) -> "DataFrameContentStore":
        return cls(pd.json_normalize(list(records)), version=version)

    @classmethod
    def from_snapshot(cls, path: Path = CANDIDATES_SNAPSHOT_PATH) -> "DataFrameContentStore":
        return cls(load_candidates_snapshot(path))

    @property
    def version(self) -> str:
        return self._version

    def __len__(self) -> int:
        return len(self._df)

    def replace(self, df: pd.DataFrame, version: Optional[str] = None) -> None:
        """Swap in new content; bumps the version so caches invalidate."""
        self._df = normalize_candidates_df(df)
        self._version = version or _frame_version(self._df)
        logger.info("Content store replaced: {} rows, version {}", len(self._df), self._version)

    def fetch_candidates(
        self,
        ids: Optional[Sequence[str]] = None,
        category: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> List[CandidateItem]:
        df = self._df
        if ids is not None:
            df = df[df["id"].isin([str(i) for i in ids])]
        if category:
            df = df[df["category"].str.casefold() == category.casefold()]
        if date_range is not None:
            if date_range.start is not None:
                df = df[df["published_at"] >= pd.Timestamp(date_range.start)]
            if date_range.end is not None:
                df = df[df["published_at"] <= pd.Timestamp(date_range.end)]

        out: List[CandidateItem] = []
        for row in df.to_dict(orient="records"):
            try:
                out.append(_row_to_candidate(row))
            except ValidationError as e:
                logger.warning("Skipping malformed candidate {}: {}", row.get("id"), e.errors()[:1])
        return out


class InMemoryUserProfileStore:
    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._profiles = dict(profiles or {})

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        profile = self._profiles.get(user_id)
        return dict(profile) if profile is not None else None

    def put(self, user_id: str, profile: Dict[str, Any]) -> None:
        self._profiles[user_id] = dict(profile)


class InMemoryRecentQueryLog:
    """Bounded, most-recent-first, de-duplicated log of query texts."""

    def __init__(self, maxlen: int = RECENT_QUERY_LOG_SIZE) -> None:
        self._items: Deque[str] = deque(maxlen=maxlen)

    def append(self, query_text: str) -> None:
        q = (query_text or "").strip()
        if not q:
            return
        if q in self._items:
            self._items.remove(q)
        self._items.appendleft(q)

    def recent(self, n: Optional[int] = None) -> List[str]:
        items = list(self._items)
        return items if n is None else items[:n]

