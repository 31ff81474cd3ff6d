"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple


Scale = Tuple[float, float]

SCALE_UNIT: Scale = (0.0, 1.0)
SCALE_PERCENT: Scale = (0.0, 100.0)


@dataclass(frozen=True)
class SignalScore:
    """One provider's opinion about one candidate, on the provider's own scale."""

    provider_id: str
    candidate_id: str
    raw_score: float
    declared_scale: Scale
    confidence: float
    reasoning: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NormalizedScore:
    """A :class:`SignalScore` mapped onto [0, 1]."""

    provider_id: str
    candidate_id: str
    score: float
    confidence: float
    reasoning: Tuple[str, ...] = ()


class ProviderState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    # completed, but nothing usable survived normalisation
    EMPTY = "empty"


@dataclass
class ProviderOutcome:
    provider_id: str
    state: ProviderState = ProviderState.PENDING
    scores: List[SignalScore] = field(default_factory=list)
    error: str = ""
    elapsed_ms: float = 0.0


@dataclass
class FusedCandidate:
    """Fusion output before filtering / ranking."""

    candidate_id: str
    fused_score: float
    confidence: float
    contributing_signals: List[str]
    providers: List[str]
