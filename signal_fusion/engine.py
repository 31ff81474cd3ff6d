from __future__ import annotations

"""
Ranking engine: request-scoped fan-out / fan-in over signal providers.

    RankingRequest -> validate -> fetch candidates -> providers (concurrent)
      -> normalise -> group by id -> fuse -> filter -> sort -> top-N

The candidate fetch counts against the global deadline; a fetch that overruns
it yields an empty candidate set. Each enabled provider then runs as its own
task bounded by ``min(timeout_ms, remaining global deadline)``. Whatever has
not finished when the global deadline passes is cancelled and treated as
absent, and an answer that arrives after its provider's budget is discarded.
Only :class:`InvalidRequest` (and :class:`RequestSuperseded`) reach the
caller; provider failures degrade the response towards fewer signals.
"""

import asyncio
import time
from typing import Dict, Iterable, List, Optional, Sequence, Set

from loguru import logger

from . import config
from .cache import ResultCache, request_fingerprint
from .collaborators import ContentStore, RecentQueryLog, UserProfileStore
from .config import (
    CandidateItem,
    ProviderConfig,
    RankingRequest,
    RankingResponse,
    RankingStatus,
    SortMode,
    TypeaheadSuggestion,
    UserContext,
)
from .errors import InvalidRequest, ProviderTimeout, RequestSuperseded
from .fusion import fuse_scores
from .normalize import fold_text, normalize_scores
from .pipeline_types import NormalizedScore, ProviderOutcome, ProviderState
from .post_processing import (
    apply_filters,
    build_facets,
    build_highlights,
    build_suggestions,
    build_typeahead,
    sort_fused,
    truncate_and_rank,
)
from .providers import (
    KeywordMatchProvider,
    ModelEnsembleProvider,
    PersonalizationProvider,
    SignalProvider,
    TrendSignalProvider,
)


# -----------------------
# Validation
# -----------------------

def validate_provider_configs(configs: Iterable[ProviderConfig]) -> List[ProviderConfig]:
    out: List[ProviderConfig] = []
    seen: Set[str] = set()
    for cfg in configs:
        if not cfg.provider_id:
            raise InvalidRequest("provider config without provider_id")
        if cfg.provider_id in seen:
            raise InvalidRequest(f"duplicate provider config: {cfg.provider_id}")
        if not cfg.weight > 0:
            raise InvalidRequest(f"{cfg.provider_id}: weight must be > 0, got {cfg.weight}")
        if cfg.timeout_ms <= 0:
            raise InvalidRequest(f"{cfg.provider_id}: timeout_ms must be > 0, got {cfg.timeout_ms}")
        seen.add(cfg.provider_id)
        out.append(cfg)
    return out


def validate_request(request: RankingRequest) -> RankingRequest:
    """Reject malformed requests; returns a copy with canonical sort mode / filters."""
    if request.max_results <= 0:
        raise InvalidRequest(f"max_results must be > 0, got {request.max_results}")

    mode = str(request.sort_mode or "").strip().lower()
    if mode not in {m.value for m in SortMode}:
        raise InvalidRequest(f"unknown sort_mode: {request.sort_mode!r}")

    filters = request.filters.model_copy()
    if filters.category is not None:
        filters.category = filters.category.strip() or None
    if filters.author is not None:
        filters.author = filters.author.strip() or None
    dr = filters.date_range
    if dr is not None and dr.start is not None and dr.end is not None and dr.start > dr.end:
        raise InvalidRequest(f"date_range start {dr.start.isoformat()} is after end {dr.end.isoformat()}")

    return request.model_copy(update={"sort_mode": mode, "filters": filters})


# -----------------------
# Engine
# -----------------------

class RankingEngine:
    def __init__(
        self,
        providers: Sequence[SignalProvider],
        content_store: ContentStore,
        provider_configs: Optional[Sequence[ProviderConfig]] = None,
        profile_store: Optional[UserProfileStore] = None,
        query_log: Optional[RecentQueryLog] = None,
        cache: Optional[ResultCache] = None,
        deadline_ms: int = config.REQUEST_DEADLINE_MS,
    ) -> None:
        if deadline_ms <= 0:
            raise ValueError("deadline_ms must be > 0")
        self.providers: Dict[str, SignalProvider] = {}
        for p in providers:
            if p.provider_id in self.providers:
                raise ValueError(f"duplicate provider id: {p.provider_id}")
            self.providers[p.provider_id] = p

        self.content_store = content_store
        self.profile_store = profile_store
        self.query_log = query_log
        self.cache = cache
        self.deadline_ms = deadline_ms
        self.configure(provider_configs if provider_configs is not None else config.DEFAULT_PROVIDER_CONFIGS)

        self._inflight_by_caller: Dict[str, asyncio.Task] = {}
        self._superseded: Set[asyncio.Task] = set()

    # ----- configuration -----

    def configure(self, provider_configs: Sequence[ProviderConfig]) -> None:
        """Replace provider configs. Providers without a config get the defaults."""
        configs = {c.provider_id: c for c in validate_provider_configs(provider_configs)}
        self.provider_configs: List[ProviderConfig] = [
            configs.get(pid) or ProviderConfig(provider_id=pid) for pid in self.providers
        ]
        unknown = sorted(set(configs) - set(self.providers))
        if unknown:
            logger.debug("Ignoring configs for unregistered providers: {}", unknown)

    def active_configs(self) -> List[ProviderConfig]:
        return [c for c in self.provider_configs if c.enabled]

    # ----- public entry point -----

    async def rank(self, request: RankingRequest) -> RankingResponse:
        request = validate_request(request)
        request = self._with_profile(request)
        self._record_query(request.query_text)

        caller = request.caller_id
        task = asyncio.create_task(self._rank_cached(request))
        if caller:
            previous = self._inflight_by_caller.get(caller)
            if previous is not None and not previous.done():
                logger.info("Request from caller {} superseded by a newer one", caller)
                self._superseded.add(previous)
                previous.cancel()
            self._inflight_by_caller[caller] = task

        try:
            return await task
        except asyncio.CancelledError:
            if task in self._superseded:
                raise RequestSuperseded(f"request from caller {caller} was superseded") from None
            raise
        finally:
            self._superseded.discard(task)
            if caller and self._inflight_by_caller.get(caller) is task:
                del self._inflight_by_caller[caller]

    async def suggest(self, prefix: str, limit: int = config.MAX_TYPEAHEAD) -> List[TypeaheadSuggestion]:
        """Typeahead over titles, categories and tags of the current content."""
        if limit <= 0:
            raise InvalidRequest(f"limit must be > 0, got {limit}")
        if not fold_text(prefix):
            return []
        candidates = await self._fetch_candidates(None, self.deadline_ms / 1000.0)
        return build_typeahead(candidates, prefix, limit)

    # ----- collaborators -----

    def _with_profile(self, request: RankingRequest) -> RankingRequest:
        ctx = request.user_context
        if self.profile_store is None or ctx is None or not ctx.user_id or ctx.has_profile():
            return request
        try:
            stored = self.profile_store.get(ctx.user_id)
        except Exception as e:
            logger.warning("Profile lookup failed for {}: {}", ctx.user_id, e)
            return request
        if not stored:
            return request
        merged = UserContext.model_validate({**stored, "user_id": ctx.user_id})
        return request.model_copy(update={"user_context": merged})

    def _record_query(self, query_text: Optional[str]) -> None:
        if self.query_log is None or not query_text:
            return
        asyncio.get_running_loop().call_soon(self._append_query, query_text)

    def _append_query(self, query_text: str) -> None:
        try:
            self.query_log.append(query_text)
        except Exception as e:
            logger.warning("Recent query log append failed: {}", e)

    # ----- cache -----

    async def _rank_cached(self, request: RankingRequest) -> RankingResponse:
        if self.cache is None:
            return await self._compute(request)
        version = self.content_store.version
        fp = request_fingerprint(request, self.active_configs(), version)
        response, reused = await self.cache.get_or_compute(fp, version, lambda: self._compute(request))
        if reused:
            logger.debug("Serving cached ranking for fingerprint {}", fp[:12])
            return response.model_copy(update={"cached": True})
        return response

    # ----- pipeline -----

    async def _fetch_candidates(self, ids: Optional[Sequence[str]], timeout_s: float) -> Sequence[CandidateItem]:
        try:
            items = await asyncio.wait_for(
                asyncio.to_thread(self.content_store.fetch_candidates, ids),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            logger.error("Content store fetch exceeded the {}ms request deadline", self.deadline_ms)
            return ()
        except Exception as e:
            logger.error("Content store fetch failed: {}", e)
            return ()
        # one entry per id; the store should already guarantee this
        by_id: Dict[str, CandidateItem] = {}
        for c in items:
            by_id.setdefault(c.id, c)
        return tuple(by_id.values())

    async def _run_provider(
        self,
        provider: SignalProvider,
        cfg: ProviderConfig,
        candidates: Sequence[CandidateItem],
        request: RankingRequest,
        timeout_s: float,
    ) -> ProviderOutcome:
        outcome = ProviderOutcome(provider_id=cfg.provider_id)
        started = time.perf_counter()
        try:
            scores = await asyncio.wait_for(provider.run(candidates, request), timeout=timeout_s)
            # a provider that blocked the loop returns after its budget; its answer is too late
            if time.perf_counter() - started > timeout_s:
                raise asyncio.TimeoutError
            outcome.scores = scores
            outcome.state = ProviderState.COMPLETED
        except asyncio.TimeoutError:
            err = ProviderTimeout(cfg.provider_id, f"no answer within {timeout_s * 1000:.0f}ms")
            outcome.state = ProviderState.TIMED_OUT
            outcome.error = str(err)
            logger.warning("Provider timed out: {}", err)
        except Exception as e:
            outcome.state = ProviderState.ERRORED
            outcome.error = str(e)
            logger.warning("Provider {} failed: {}", cfg.provider_id, e)
        outcome.elapsed_ms = (time.perf_counter() - started) * 1000.0
        return outcome

    async def _fan_out(
        self,
        active: Sequence[ProviderConfig],
        candidates: Sequence[CandidateItem],
        request: RankingRequest,
        remaining_s: float,
    ) -> Dict[str, ProviderOutcome]:
        outcomes = {cfg.provider_id: ProviderOutcome(provider_id=cfg.provider_id) for cfg in active}
        tasks: Dict[asyncio.Task, str] = {}
        for cfg in active:
            timeout_s = min(cfg.timeout_ms / 1000.0, remaining_s)
            task = asyncio.create_task(
                self._run_provider(self.providers[cfg.provider_id], cfg, candidates, request, timeout_s),
                name=f"provider:{cfg.provider_id}",
            )
            tasks[task] = cfg.provider_id

        try:
            done, pending = await asyncio.wait(tasks, timeout=remaining_s)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise

        for t in pending:
            t.cancel()
            pid = tasks[t]
            outcomes[pid].state = ProviderState.TIMED_OUT
            outcomes[pid].error = str(ProviderTimeout(pid, "cancelled at request deadline"))
            logger.warning("Provider {} cancelled at the {}ms request deadline", pid, self.deadline_ms)

        for t in done:
            outcomes[tasks[t]] = t.result()
        return outcomes

    async def _compute(self, request: RankingRequest) -> RankingResponse:
        started = time.perf_counter()
        deadline_s = self.deadline_ms / 1000.0
        active = self.active_configs()

        candidates = await self._fetch_candidates(request.candidate_ids, deadline_s)
        # nothing to score: every provider is trivially empty
        outcomes = {
            cfg.provider_id: ProviderOutcome(provider_id=cfg.provider_id, state=ProviderState.EMPTY)
            for cfg in active
        }
        if candidates and active:
            remaining_s = max(0.0, deadline_s - (time.perf_counter() - started))
            outcomes = await self._fan_out(active, candidates, request, remaining_s)

        normalized: List[NormalizedScore] = []
        contributing: List[str] = []
        for cfg in active:
            outcome = outcomes[cfg.provider_id]
            if outcome.state is not ProviderState.COMPLETED:
                continue
            kept = normalize_scores(outcome.scores)
            if not kept:
                outcome.state = ProviderState.EMPTY
                continue
            normalized.extend(kept)
            contributing.append(cfg.provider_id)

        if not contributing:
            status = RankingStatus.NO_SIGNALS_AVAILABLE
        elif len(contributing) < len(active):
            status = RankingStatus.PARTIAL
        else:
            status = RankingStatus.OK

        weights = {cfg.provider_id: cfg.weight for cfg in active}
        fused = fuse_scores(normalized, weights, provider_order=[cfg.provider_id for cfg in active])

        by_id = {c.id: c for c in candidates}
        filtered = apply_filters(fused, by_id, request.filters)
        ordered = sort_fused(filtered, by_id, SortMode(request.sort_mode))
        results = truncate_and_rank(ordered, request.max_results)
        results = [
            r.model_copy(update={"highlights": build_highlights(by_id[r.candidate_id], request.query_text)})
            for r in results
        ]

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        states = {pid: o.state.value for pid, o in outcomes.items()}
        logger.info(
            "Ranked {} candidates -> {} fused, {} returned; status={} states={} in {:.1f}ms",
            len(candidates), len(fused), len(results), status.value, states, elapsed_ms,
        )
        return RankingResponse(
            results=results,
            total_candidates=len(fused),
            status=status,
            provider_states=states,
            facets=build_facets(filtered, by_id),
            suggestions=build_suggestions(results, by_id, request.query_text),
            query_time_ms=round(elapsed_ms, 3),
            cached=False,
        )


def build_default_engine(
    content_store: ContentStore,
    relevance_service=None,
    profile_store: Optional[UserProfileStore] = None,
    query_log: Optional[RecentQueryLog] = None,
    use_cache: bool = True,
) -> RankingEngine:
    """Engine with every shipped provider; semantic only when a service is given."""
    providers: List[SignalProvider] = [
        KeywordMatchProvider(),
        ModelEnsembleProvider(),
        TrendSignalProvider(),
        PersonalizationProvider(),
    ]
    if relevance_service is not None:
        from .relevance import SemanticRelevanceProvider

        providers.insert(1, SemanticRelevanceProvider(relevance_service))
    return RankingEngine(
        providers=providers,
        content_store=content_store,
        profile_store=profile_store,
        query_log=query_log,
        cache=ResultCache() if use_cache else None,
    )
