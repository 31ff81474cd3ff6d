from __future__ import annotations

"""
FastAPI application exposing the ranking engine.

- GET  /health          liveness
- POST /rank            RankingRequest -> RankingResponse
- GET  /recent-queries  most recent distinct queries, newest first
- GET  /suggest         typeahead over titles, categories and tags

Run locally with ``python -m signal_fusion.api``.
"""

from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from . import config
from .collaborators import DataFrameContentStore, InMemoryRecentQueryLog, InMemoryUserProfileStore
from .config import HealthResponse, RankingRequest, RankingResponse, TypeaheadSuggestion
from .engine import RankingEngine, build_default_engine
from .errors import InvalidRequest, RequestSuperseded
from .relevance import HttpRelevanceService


# -----------------------
# FastAPI app + startup
# -----------------------

app = FastAPI(title="CMS signal fusion ranker")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_engine: Optional[RankingEngine] = None
_query_log = InMemoryRecentQueryLog()


def set_engine(engine: Optional[RankingEngine]) -> None:
    global _engine
    _engine = engine


def get_engine() -> Optional[RankingEngine]:
    return _engine


@app.on_event("startup")
def startup_event() -> None:
    config.configure_logging()
    logger.info("Starting ranker warmup...")
    if _engine is not None:
        logger.info("Engine already configured; skipping snapshot load.")
        return
    path = config.CANDIDATES_SNAPSHOT_PATH
    if not path.exists():
        logger.warning("Candidate snapshot {} not found; /rank will answer 503 until configured.", path)
        return

    store = DataFrameContentStore.from_snapshot(path)
    logger.info("Loaded candidate snapshot with {} rows (version {})", len(store), store.version)
    service = HttpRelevanceService() if config.RELEVANCE_SERVICE_URL else None
    if service is None:
        logger.info("RELEVANCE_SERVICE_URL unset; semantic provider disabled.")
    set_engine(
        build_default_engine(
            store,
            relevance_service=service,
            profile_store=InMemoryUserProfileStore(),
            query_log=_query_log,
        )
    )
    logger.info("Warmup complete.")


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


@app.post("/rank", response_model=RankingResponse)
async def rank(req: RankingRequest) -> RankingResponse:
    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Ranking engine not configured")
    try:
        return await engine.rank(req)
    except InvalidRequest as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except RequestSuperseded as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@app.get("/recent-queries", response_model=List[str])
def recent_queries(limit: int = Query(10, ge=1, le=config.RECENT_QUERY_LOG_SIZE)) -> List[str]:
    engine = get_engine()
    log = engine.query_log if engine is not None and engine.query_log is not None else _query_log
    recent = getattr(log, "recent", None)
    return recent(limit) if recent is not None else []


@app.get("/suggest", response_model=List[TypeaheadSuggestion])
async def suggest(
    q: str = Query("", max_length=200),
    limit: int = Query(config.MAX_TYPEAHEAD, ge=1, le=50),
) -> List[TypeaheadSuggestion]:
    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Ranking engine not configured")
    return await engine.suggest(q, limit)


if __name__ == "__main__":
    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT, log_level=config.LOG_LEVEL.lower())
