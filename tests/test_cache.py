import asyncio

import pytest

from signal_fusion.cache import ResultCache, request_fingerprint
from signal_fusion.config import ProviderConfig, RankingFilters, RankingRequest

PROVIDERS = [ProviderConfig(provider_id="keyword"), ProviderConfig(provider_id="trend", weight=0.5)]


class FakeClock:
    def __init__(self):
        self.t = 100.0

    def __call__(self):
        return self.t


def test_fingerprint_ignores_caller_and_provider_order():
    r1 = RankingRequest(query_text="vision", caller_id="tab-1")
    r2 = RankingRequest(query_text="vision", caller_id="tab-2")
    assert request_fingerprint(r1, PROVIDERS, "v1") == request_fingerprint(r2, list(reversed(PROVIDERS)), "v1")


def test_fingerprint_changes_with_meaningful_inputs():
    base = request_fingerprint(RankingRequest(query_text="vision"), PROVIDERS, "v1")
    assert base != request_fingerprint(RankingRequest(query_text="sports"), PROVIDERS, "v1")
    assert base != request_fingerprint(RankingRequest(query_text="vision"), PROVIDERS, "v2")
    assert base != request_fingerprint(
        RankingRequest(query_text="vision", filters=RankingFilters(category="Economy")), PROVIDERS, "v1"
    )
    assert base != request_fingerprint(RankingRequest(query_text="vision"), PROVIDERS[:1], "v1")


def test_concurrent_identical_requests_coalesce():
    cache = ResultCache(ttl_ms=1000)
    calls = []

    async def compute():
        calls.append(1)
        await asyncio.sleep(0.05)
        return "result"

    async def go():
        return await asyncio.gather(*[cache.get_or_compute("fp", "v1", compute) for _ in range(5)])

    out = asyncio.run(go())
    assert len(calls) == 1
    assert cache.computations == 1
    assert [v for v, _ in out] == ["result"] * 5
    assert sum(1 for _, reused in out if not reused) == 1


def test_ttl_expiry():
    clock = FakeClock()
    cache = ResultCache(ttl_ms=1500, clock=clock)
    cache.put("fp", "x")
    assert cache.get("fp") == "x"
    clock.t += 1.0
    assert cache.get("fp") == "x"
    clock.t += 0.6
    assert cache.get("fp") is None


def test_version_change_drops_everything():
    cache = ResultCache()
    cache.observe_version("v1")
    cache.put("a", 1)
    cache.put("b", 2)
    cache.observe_version("v1")
    assert len(cache) == 2
    cache.observe_version("v2")
    assert len(cache) == 0


def test_failures_are_not_cached_and_reach_all_waiters():
    cache = ResultCache()
    attempts = []

    async def failing():
        attempts.append(1)
        await asyncio.sleep(0.01)
        raise RuntimeError("store down")

    async def go():
        return await asyncio.gather(
            *[cache.get_or_compute("fp", "v1", failing) for _ in range(3)], return_exceptions=True
        )

    out = asyncio.run(go())
    assert len(attempts) == 1
    assert all(isinstance(e, RuntimeError) for e in out)
    assert len(cache) == 0

    async def ok():
        return "fine"

    assert asyncio.run(cache.get_or_compute("fp", "v1", ok)) == ("fine", False)


def test_max_entries_evicts_oldest():
    cache = ResultCache(max_entries=2)
    for fp in ("a", "b", "c"):
        cache.put(fp, fp)
    assert cache.get("a") is None
    assert cache.get("c") == "c"


def test_dump_returns_plain_records():
    cache = ResultCache()
    cache.observe_version("v9")
    cache.put("fp", {"k": 1})
    (rec,) = cache.dump()
    assert rec["fingerprint"] == "fp"
    assert rec["version"] == "v9"
    assert rec["value"] == {"k": 1}


def test_invalid_settings_rejected():
    with pytest.raises(ValueError):
        ResultCache(ttl_ms=0)
