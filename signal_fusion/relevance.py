# signal_fusion/relevance.py
from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, List, Optional, Sequence

import httpx
import numpy as np
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from . import config
from .collaborators import ExternalRelevanceService
from .config import CandidateItem
from .errors import ProviderError, ProviderMalformedResponse
from .pipeline_types import Scale, SignalScore
from .providers import SignalProvider

# ---------------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------------

DEFAULT_SEMANTIC_CONFIDENCE = 0.7


class RelevanceEntry(BaseModel):
    """One entry returned by the relevance service (camelCase or snake_case)."""

    model_config = {"extra": "ignore"}

    candidate_id: str = Field(validation_alias=AliasChoices("candidate_id", "candidateId", "id"))
    raw_score: float = Field(validation_alias=AliasChoices("raw_score", "rawScore", "score"))
    reasoning: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None

    @field_validator("candidate_id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str:
        if v is None or isinstance(v, (dict, list)) or str(v).strip() == "":
            raise ValueError("missing candidate id")
        return str(v).strip()

    @field_validator("raw_score")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("raw score must be finite")
        return v

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasons(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v.strip()] if v.strip() else []
        if isinstance(v, (list, tuple)):
            return [str(r).strip() for r in v if r is not None and str(r).strip()]
        raise ValueError("reasoning must be a string or a list of strings")


def parse_entry(raw: Any, provider_id: str) -> RelevanceEntry:
    if not isinstance(raw, dict):
        raise ProviderMalformedResponse(provider_id, f"entry is not an object: {type(raw).__name__}")
    try:
        return RelevanceEntry.model_validate(raw)
    except ValidationError as e:
        raise ProviderMalformedResponse(provider_id, str(e.errors()[:1])) from e


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class SemanticRelevanceProvider(SignalProvider):
    """
    Delegates scoring to an external relevance service.

    This side only validates the returned entries, clamps ``raw_score`` into
    the declared scale and drops malformed entries with a warning. Errors
    from the service itself propagate so the engine marks the provider as
    errored.
    """

    provider_id = config.PROVIDER_SEMANTIC

    def __init__(
        self,
        service: ExternalRelevanceService,
        declared_scale: Scale = config.SEMANTIC_SCALE,
        default_confidence: float = DEFAULT_SEMANTIC_CONFIDENCE,
    ) -> None:
        self.service = service
        self.declared_scale = declared_scale
        self.default_confidence = default_confidence

    async def compute(self, candidates, request):
        query = request.query_text or ""
        if not query or not candidates:
            return []

        raw_entries = await self.service.score(candidates, query)
        if not isinstance(raw_entries, list):
            raise ProviderError(self.provider_id, f"expected a list, got {type(raw_entries).__name__}")

        known = {c.id for c in candidates}
        low, high = self.declared_scale
        out: List[SignalScore] = []
        malformed = 0
        for raw in raw_entries:
            try:
                entry = parse_entry(raw, self.provider_id)
                if entry.candidate_id not in known:
                    raise ProviderMalformedResponse(self.provider_id, f"unknown candidate {entry.candidate_id}")
            except ProviderMalformedResponse as e:
                malformed += 1
                logger.warning("Dropping malformed relevance entry: {}", e)
                continue

            score = min(high, max(low, entry.raw_score))
            conf = self.default_confidence if entry.confidence is None else entry.confidence
            if not math.isfinite(conf):
                conf = self.default_confidence
            reasons = entry.reasoning or [f"semantic relevance {score:.0f}/{high:.0f}"]
            out.append(self._score(entry.candidate_id, score, min(1.0, max(0.0, conf)), reasons))

        if malformed:
            logger.warning("{}: kept {} entries, dropped {} malformed", self.provider_id, len(out), malformed)
        return out


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

def build_candidate_text(candidate: CandidateItem) -> str:
    """Text handed to relevance models: title + excerpt + category + tags."""
    bits = [candidate.title.strip(), candidate.excerpt.strip()]
    if candidate.category:
        bits.append(f"Category: {candidate.category}.")
    if candidate.tags:
        bits.append(f"Tags: {' '.join(candidate.tags)}.")
    return " ".join(b for b in bits if b).strip()


class HttpRelevanceService:
    """
    JSON-over-HTTP relevance service.

    POSTs ``{"query": ..., "candidates": [{"id", "text"}...]}`` and accepts
    either a bare list of entries or ``{"results": [...]}``.
    """

    def __init__(
        self,
        url: str = config.RELEVANCE_SERVICE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise ValueError("relevance service url is empty")
        self.url = url
        self._client = client

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(config.HTTP_READ_TIMEOUT, connect=config.HTTP_CONNECT_TIMEOUT),
            headers={"User-Agent": config.HTTP_USER_AGENT},
        )

    async def score(self, candidates: Sequence[CandidateItem], query_text: str) -> List[Dict[str, Any]]:
        payload = {
            "query": query_text,
            "candidates": [{"id": c.id, "text": build_candidate_text(c)} for c in candidates],
        }
        client = self._client or self._make_client()
        try:
            r = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(config.PROVIDER_SEMANTIC, f"request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if r.status_code >= 400:
            raise ProviderError(config.PROVIDER_SEMANTIC, f"HTTP {r.status_code} from {self.url}")
        try:
            body = r.json()
        except ValueError as e:
            raise ProviderError(config.PROVIDER_SEMANTIC, "response is not JSON") from e

        if isinstance(body, dict):
            body = body.get("results", [])
        return body


# process-wide model cache
_CROSS_ENCODER = None


def load_cross_encoder(model_name: str = config.CROSS_ENCODER_MODEL):
    """Load and cache a sentence-transformers CrossEncoder (``models`` extra)."""
    global _CROSS_ENCODER
    if _CROSS_ENCODER is not None:
        return _CROSS_ENCODER
    try:
        from sentence_transformers import CrossEncoder  # type: ignore
    except ImportError as e:
        raise ProviderError(
            config.PROVIDER_SEMANTIC,
            "sentence-transformers is not installed; install the 'models' extra",
        ) from e
    logger.info("Loading cross-encoder: {}", model_name)
    _CROSS_ENCODER = CrossEncoder(model_name, device="cpu")
    logger.info("Loaded cross-encoder: {}", model_name)
    return _CROSS_ENCODER


def score_with_model(model, query: str, candidate_texts: Sequence[str]) -> np.ndarray:
    if not candidate_texts:
        return np.zeros((0,), dtype="float32")
    pairs = [(query, t) for t in candidate_texts]
    return np.asarray(model.predict(pairs), dtype="float32")


class CrossEncoderRelevanceService:
    """
    Local relevance backend: cross-encoder logits squashed to 0-100.

    ``model`` may be injected (anything with ``predict(pairs)``); otherwise
    the configured CrossEncoder is loaded on first use. Inference runs in a
    worker thread so it does not block the event loop.
    """

    def __init__(self, model=None, model_name: str = config.CROSS_ENCODER_MODEL) -> None:
        self._model = model
        self.model_name = model_name

    async def score(self, candidates: Sequence[CandidateItem], query_text: str) -> List[Dict[str, Any]]:
        model = self._model or await asyncio.to_thread(load_cross_encoder, self.model_name)
        texts = [build_candidate_text(c) for c in candidates]
        logits = await asyncio.to_thread(score_with_model, model, query_text, texts)
        probs = 1.0 / (1.0 + np.exp(-logits.astype("float64")))
        return [
            {
                "candidateId": c.id,
                "rawScore": float(p * 100.0),
                "reasoning": [f"cross-encoder relevance {p:.0%}"],
                "confidence": float(abs(2.0 * p - 1.0)),
            }
            for c, p in zip(candidates, probs)
        ]
