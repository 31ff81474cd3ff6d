from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DATA_DIR = PROJECT_ROOT / "data"
CANDIDATES_SNAPSHOT_PATH = Path(
    os.getenv("CANDIDATES_SNAPSHOT_PATH", str(DATA_DIR / "candidates.json"))
)

API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))


# ---------------------------
# Deadlines & cache
# ---------------------------

# Hard ceiling for one ranking request, regardless of provider timeouts.
REQUEST_DEADLINE_MS = int(os.getenv("REQUEST_DEADLINE_MS", "2000"))

# Short TTL matching UI debounce windows (search box debounces at 300-500ms).
CACHE_TTL_MS = int(os.getenv("CACHE_TTL_MS", "1500"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "512"))


# ---------------------------
# Provider defaults
# ---------------------------

PROVIDER_KEYWORD = "keyword"
PROVIDER_SEMANTIC = "semantic"
PROVIDER_ENSEMBLE = "ensemble"
PROVIDER_TREND = "trend"
PROVIDER_PERSONALIZATION = "personalization"

# Field weights for substring keyword matching (0-100 scale, capped)
KEYWORD_FIELD_WEIGHTS: Dict[str, float] = {
    "title": 50.0,
    "content": 30.0,
    "tags": 20.0,
    "category": 15.0,
    "author": 10.0,
}
KEYWORD_SCORE_CAP = 100.0

SEMANTIC_SCALE = (0.0, 100.0)

TREND_HALF_LIFE_HOURS = float(os.getenv("TREND_HALF_LIFE_HOURS", "48"))
TREND_LIKE_WEIGHT = 5.0
TREND_SHARE_WEIGHT = 10.0

# Ensemble sub-scorer normalisers
ENGAGEMENT_VIEWS_NORM = 1000.0
ENGAGEMENT_LIKES_NORM = 100.0
ENGAGEMENT_SHARES_NORM = 50.0
RECENCY_WINDOW_HOURS = 7 * 24
BREAKING_PRIORITIES = ("breaking", "urgent")

# Personalisation
READING_WORDS_PER_MINUTE = 200
PERSONAL_CATEGORY_BONUS = 0.4
PERSONAL_READING_TIME_BONUS = 0.3
PERSONAL_AUTHOR_BONUS = 0.2
PERSONAL_LIKED_BONUS = 0.1


# ---------------------------
# External relevance service
# ---------------------------

RELEVANCE_SERVICE_URL = os.getenv("RELEVANCE_SERVICE_URL", "")
HTTP_CONNECT_TIMEOUT = 1.0
HTTP_READ_TIMEOUT = 1.5
HTTP_USER_AGENT = "cms-signal-fusion/1.0"

# Local cross-encoder backend (optional "models" extra)
CROSS_ENCODER_MODEL = os.getenv(
    "CROSS_ENCODER_MODEL", "cross-encoder/ms-marco-MiniLM-L-6-v2"
)


# ---------------------------
# Response extras
# ---------------------------

MAX_SUGGESTIONS = 5
MAX_TYPEAHEAD = 10
MAX_HIGHLIGHTS = 3
HIGHLIGHT_WINDOW_WORDS = 3
RECENT_QUERY_LOG_SIZE = 50


# ---------------------------
# Logging / observability
# ---------------------------

LOG_DIR = PROJECT_ROOT / "logs"
LOG_DIR.mkdir(exist_ok=True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL, log_dir: Path = LOG_DIR) -> None:
    """Reset loguru sinks: stderr at ``level`` plus a rotating file under ``log_dir``."""
    logger.remove()
    logger.add(sys.stderr, level=level)
    logger.add(
        log_dir / "signal_fusion.log",
        level=level,
        rotation="10 MB",
        retention=5,
        enqueue=True,
    )


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class SortMode(str, Enum):
    RELEVANCE = "relevance"
    DATE = "date"
    POPULARITY = "popularity"


class RankingStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    NO_SIGNALS_AVAILABLE = "no_signals_available"


class Popularity(BaseModel):
    views: int = Field(default=0, ge=0)
    likes: int = Field(default=0, ge=0)
    shares: int = Field(default=0, ge=0)

    @field_validator("views", "likes", "shares", mode="before")
    @classmethod
    def _coerce_count(cls, v: Any) -> int:
        # analytics arrive as strings, floats, None or negatives
        try:
            return max(0, int(float(v)))
        except (TypeError, ValueError):
            return 0


class CandidateItem(BaseModel):
    """
    Read-only view of a content item as handed to the signal providers.
    Loose upstream data is default-filled here so providers never see None.
    """

    model_config = {"frozen": True}

    id: str
    title: str = ""
    excerpt: str = ""
    content: str = ""
    category: str = ""
    author: str = ""
    priority: str = ""
    published_at: Optional[datetime] = None
    popularity: Popularity = Field(default_factory=Popularity)
    tags: List[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> str:
        if v is None or str(v).strip() == "":
            raise ValueError("candidate id is required")
        return str(v).strip()

    @field_validator("title", "excerpt", "content", "category", "author", "priority", mode="before")
    @classmethod
    def _text_or_empty(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, float) and v != v:  # NaN from pandas
            return ""
        return str(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_to_list(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        try:
            return [str(t).strip() for t in v if t is not None and str(t).strip()]
        except TypeError:
            return []

    @field_validator("published_at", mode="before")
    @classmethod
    def _lenient_date(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        if isinstance(v, float) and v != v:
            return None
        return v

    @field_validator("published_at")
    @classmethod
    def _aware_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def body_text(self) -> str:
        return self.content or self.excerpt


class DateRange(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class RankingFilters(BaseModel):
    category: Optional[str] = None
    author: Optional[str] = None
    date_range: Optional[DateRange] = None


class UserContext(BaseModel):
    """Personalisation inputs, passed explicitly with every request."""

    user_id: Optional[str] = None
    preferred_categories: List[str] = Field(default_factory=list)
    followed_authors: List[str] = Field(default_factory=list)
    liked_ids: List[str] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)
    reading_time: Optional[str] = None  # "short" | "medium" | "long"

    def has_profile(self) -> bool:
        return bool(
            self.preferred_categories
            or self.followed_authors
            or self.liked_ids
            or self.interests
            or self.reading_time
        )


class RankingRequest(BaseModel):
    """
    One search / recommendation request.

    ``sort_mode`` and ``max_results`` are kept loosely typed here so the
    engine can reject bad values with :class:`InvalidRequest` before any
    provider is invoked, rather than failing inside pydantic.
    """

    query_text: Optional[str] = None
    user_context: Optional[UserContext] = None
    filters: RankingFilters = Field(default_factory=RankingFilters)
    sort_mode: str = SortMode.RELEVANCE.value
    max_results: int = 10
    candidate_ids: Optional[List[str]] = None
    caller_id: Optional[str] = None
    # Reference time for recency signals; defaults to "now" when unset.
    now: Optional[datetime] = None

    @model_validator(mode="after")
    def _strip_query(self) -> "RankingRequest":
        if self.query_text is not None:
            self.query_text = self.query_text.strip()
        return self


class ProviderConfig(BaseModel):
    provider_id: str
    weight: float = 1.0
    timeout_ms: int = 800
    enabled: bool = True


class FusedResult(BaseModel):
    candidate_id: str
    fused_score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    contributing_signals: List[str]
    providers: List[str]
    rank: int = Field(ge=1)
    highlights: List[str] = Field(default_factory=list)


class FacetCount(BaseModel):
    name: str
    count: int


class Facets(BaseModel):
    categories: List[FacetCount] = Field(default_factory=list)
    authors: List[FacetCount] = Field(default_factory=list)


class RankingResponse(BaseModel):
    """Response body for POST /rank."""

    results: List[FusedResult]
    total_candidates: int
    status: RankingStatus
    provider_states: Dict[str, str] = Field(default_factory=dict)
    facets: Facets = Field(default_factory=Facets)
    suggestions: List[str] = Field(default_factory=list)
    query_time_ms: float = 0.0
    cached: bool = False


class TypeaheadSuggestion(BaseModel):
    """One entry of GET /suggest: a title to search for or a facet to filter on."""

    text: str
    type: str  # "query" | "filter"
    kind: str  # "article" | "category" | "tag"
    value: str


class HealthResponse(BaseModel):
    """
    Response body for GET /health.
    """

    status: str


DEFAULT_PROVIDER_CONFIGS: List[ProviderConfig] = [
    ProviderConfig(provider_id=PROVIDER_KEYWORD, weight=1.0, timeout_ms=300),
    ProviderConfig(provider_id=PROVIDER_SEMANTIC, weight=1.5, timeout_ms=1500),
    ProviderConfig(provider_id=PROVIDER_ENSEMBLE, weight=1.0, timeout_ms=800),
    ProviderConfig(provider_id=PROVIDER_TREND, weight=0.5, timeout_ms=300),
    ProviderConfig(provider_id=PROVIDER_PERSONALIZATION, weight=0.75, timeout_ms=300),
]
