from __future__ import annotations

"""
Short-lived memoisation of ranking responses.

* at most one computation per request fingerprint: concurrent duplicates
  await the same in-flight future
* entries expire after ``ttl_ms`` (UI debounce scale)
* everything is dropped when the content-store version changes
* failures are never cached; the error reaches every waiter
"""

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from loguru import logger
from pydantic import BaseModel

from .config import CACHE_MAX_ENTRIES, CACHE_TTL_MS, ProviderConfig, RankingRequest

T = TypeVar("T")


def request_fingerprint(
    request: RankingRequest,
    providers: Sequence[ProviderConfig],
    content_version: str,
) -> str:
    """SHA-256 over the canonical JSON of everything that changes the answer.

    ``caller_id`` is deliberately left out so different callers asking the
    same thing share one computation.
    """
    payload: Dict[str, Any] = {
        "query": request.query_text or "",
        "filters": request.filters.model_dump(mode="json"),
        "sort": str(request.sort_mode),
        "max": request.max_results,
        "ids": sorted(request.candidate_ids) if request.candidate_ids is not None else None,
        "user": request.user_context.model_dump(mode="json") if request.user_context else None,
        "now": request.now.isoformat() if request.now else None,
        "providers": sorted((p.provider_id, float(p.weight)) for p in providers if p.enabled),
        "version": content_version,
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float


class ResultCache(Generic[T]):
    def __init__(
        self,
        ttl_ms: int = CACHE_TTL_MS,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry[T]]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Future[T]"] = {}
        self._version: Optional[str] = None
        # number of computations actually started (hits and joins excluded)
        self.computations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def observe_version(self, version: str) -> None:
        """Drop every entry if the content store moved to a new version."""
        if self._version is not None and version != self._version:
            logger.info(
                "Content version changed ({} -> {}); dropping {} cached results",
                self._version, version, len(self._entries),
            )
            self._entries.clear()
        self._version = version

    def get(self, fingerprint: str) -> Optional[T]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[fingerprint]
            return None
        return entry.value

    def put(self, fingerprint: str, value: T) -> None:
        now = self._clock()
        for fp in [fp for fp, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[fp]
        self._entries[fingerprint] = _Entry(value=value, expires_at=now + self.ttl_ms / 1000.0)
        self._entries.move_to_end(fingerprint)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def get_or_compute(
        self,
        fingerprint: str,
        version: str,
        compute: Callable[[], Awaitable[T]],
    ) -> Tuple[T, bool]:
        """Return ``(value, reused)``; ``reused`` is True for hits and joins."""
        self.observe_version(version)

        while True:
            hit = self.get(fingerprint)
            if hit is not None:
                return hit, True

            pending = self._inflight.get(fingerprint)
            if pending is None:
                break
            try:
                return await asyncio.shield(pending), True
            except asyncio.CancelledError:
                # the owning computation was cancelled (superseded); retry as owner
                if pending.cancelled():
                    continue
                raise

        fut: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        self._inflight[fingerprint] = fut
        self.computations += 1
        try:
            value = await compute()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # mark retrieved so an unobserved failure does not warn at GC
            fut.exception()
            raise
        else:
            fut.set_result(value)
            if self._version == version:
                self.put(fingerprint, value)
            return value, False
        finally:
            if self._inflight.get(fingerprint) is fut:
                del self._inflight[fingerprint]

    def dump(self) -> List[Dict[str, Any]]:
        """Live entries as plain records keyed by fingerprint."""
        now = self._clock()
        out: List[Dict[str, Any]] = []
        for fp, e in self._entries.items():
            if e.expires_at <= now:
                continue
            value = e.value.model_dump(mode="json") if isinstance(e.value, BaseModel) else e.value
            out.append(
                {
                    "fingerprint": fp,
                    "version": self._version,
                    "expires_in_ms": round((e.expires_at - now) * 1000.0, 3),
                    "value": value,
                }
            )
        return out
