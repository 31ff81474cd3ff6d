"""Error taxonomy for the ranking engine.

Only :class:`InvalidRequest` (and :class:`RequestSuperseded`, for the caller
whose request was replaced) ever reach a caller. Provider failures are
recovered inside the engine and surface only as provider states.
"""

from __future__ import annotations


class RankingError(Exception):
    """Base class for ranking engine errors."""


class InvalidRequest(RankingError, ValueError):
    """Request rejected before any provider is invoked."""


class ProviderError(RankingError):
    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id


class ProviderTimeout(ProviderError):
    pass


class ProviderMalformedResponse(ProviderError):
    """A single entry of a provider's output failed schema validation."""


class RequestSuperseded(RankingError):
    """A newer request from the same caller cancelled this one."""
