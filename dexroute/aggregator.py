from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dexroute import config
from dexroute.chain_config import ChainConfig, TokenInfo
from dexroute.dex.base import DexPlugin
from dexroute.dex.registry import PluginRegistry
from dexroute.dex.types import DexQuoteParams, RouteCandidate
from dexroute.errors import NoRouteFound
from dexroute.normalize import normalize, same_address
from infra.metrics import METRICS

log = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NO_ROUTE = "no_route"
STATUS_TIMEOUT = "timeout"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class PluginOutcome:
    dex_id: str
    status: str
    elapsed_ms: float
    via: Optional[str] = None
    amount_out: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "dexId": self.dex_id,
            "status": self.status,
            "elapsedMs": round(self.elapsed_ms, 2),
        }
        if self.via:
            out["via"] = self.via
        if self.amount_out is not None:
            out["amountOut"] = str(self.amount_out)
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class AggregationResult:
    best: Optional[RouteCandidate]
    alternatives: List[RouteCandidate] = field(default_factory=list)
    outcomes: List[PluginOutcome] = field(default_factory=list)

    @property
    def candidates(self) -> List[RouteCandidate]:
        if self.best is None:
            return []
        return [self.best, *self.alternatives]

    def best_or_raise(self) -> RouteCandidate:
        if self.best is None:
            raise NoRouteFound()
        return self.best

    def debug_summary(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for o in self.outcomes:
            counts[o.status] = counts.get(o.status, 0) + 1
        return {
            "candidates": len(self.candidates),
            "statusCounts": counts,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class _Job:
    plugin: DexPlugin
    plugin_index: int
    seq: int
    hub: Optional[str] = None


def rank_candidates(
    candidates: Sequence[Tuple[RouteCandidate, int, int]],
) -> List[RouteCandidate]:
    """Order (candidate, plugin_index, seq) triples best first.

    amount_out descending, then fewer hops, then plugin registration
    order, then the order the candidate was requested in.
    """
    ranked = sorted(candidates, key=lambda c: (-int(c[0].amount_out), len(c[0].hops), c[1], c[2]))
    return [c[0] for c in ranked]


class RouteAggregator:
    """Fans a quote request out to every plugin deployed on the chain and
    ranks what comes back.

    Each plugin call settles independently under its own timeout; a revert,
    RPC error or timeout only removes that plugin's candidate.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        *,
        timeout_s: Optional[float] = None,
        multi_hop: Optional[bool] = None,
    ):
        self.registry = registry
        self.timeout_s = float(timeout_s if timeout_s is not None else config.PLUGIN_QUOTE_TIMEOUT_S)
        self.multi_hop = bool(config.MULTI_HOP_ENABLED if multi_hop is None else multi_hop)

    def hubs_for(self, chain: ChainConfig, token_in: str, token_out: str) -> List[str]:
        """Intermediate tokens for A -> hub -> B: wrapped native first, then the configured hubs."""
        out: List[str] = []
        for addr in [chain.wrapped_native, *chain.intermediates]:
            if not addr:
                continue
            if same_address(addr, token_in) or same_address(addr, token_out):
                continue
            if any(same_address(addr, seen) for seen in out):
                continue
            out.append(str(addr))
        return out

    def _jobs(self, chain: ChainConfig, token_in: str, token_out: str) -> List[_Job]:
        jobs: List[_Job] = []
        plugins = self.registry.for_chain(chain.chain_id)
        hubs = self.hubs_for(chain, token_in, token_out) if self.multi_hop else []
        for plugin in plugins:
            idx = self.registry.index_of(plugin.id)
            jobs.append(_Job(plugin, idx, len(jobs)))
            if plugin.supports_multi_hop:
                for hub in hubs:
                    jobs.append(_Job(plugin, idx, len(jobs), hub=hub))
        return jobs

    async def _direct(
        self,
        plugin: DexPlugin,
        chain: ChainConfig,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        client: Any,
    ) -> Optional[RouteCandidate]:
        params = DexQuoteParams(chain=chain, token_in=token_in, token_out=token_out, amount_in=int(amount_in), client=client)
        return await plugin.quote_single_hop(params)

    async def _via(
        self,
        plugin: DexPlugin,
        chain: ChainConfig,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        client: Any,
        hub: str,
    ) -> Optional[RouteCandidate]:
        hub_token = chain.token_for(hub)
        first = await self._direct(plugin, chain, token_in, hub_token, amount_in, client)
        if first is None or first.amount_out <= 0:
            return None
        second = await self._direct(plugin, chain, hub_token, token_out, first.amount_out, client)
        if second is None or second.amount_out <= 0:
            return None
        gas: Optional[int] = None
        if first.gas_estimate is not None and second.gas_estimate is not None:
            gas = int(first.gas_estimate) + int(second.gas_estimate)
        cand = RouteCandidate(
            chain_id=chain.chain_id,
            dex_id=plugin.id,
            dex_name=plugin.name,
            amount_in=int(amount_in),
            amount_out=int(second.amount_out),
            hops=tuple(first.hops) + tuple(second.hops),
            gas_estimate=gas,
        )
        if not cand.has_path_continuity():
            log.debug("%s: dropping %s route with broken path continuity", plugin.id, hub)
            return None
        return cand

    async def _run_job(
        self,
        job: _Job,
        chain: ChainConfig,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        client: Any,
    ) -> Tuple[_Job, Optional[RouteCandidate], PluginOutcome]:
        t0 = time.perf_counter()
        if job.hub is None:
            coro = self._direct(job.plugin, chain, token_in, token_out, amount_in, client)
        else:
            coro = self._via(job.plugin, chain, token_in, token_out, amount_in, client, job.hub)
        cand: Optional[RouteCandidate] = None
        error: Optional[str] = None
        try:
            cand = await asyncio.wait_for(coro, timeout=self.timeout_s)
            status = STATUS_OK if cand is not None else STATUS_NO_ROUTE
        except asyncio.TimeoutError:
            status = STATUS_TIMEOUT
            error = f"timed out after {self.timeout_s:.1f}s"
        except Exception as exc:
            status = STATUS_ERROR
            error = f"{type(exc).__name__}: {exc}"
        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        METRICS.inc_reason("plugin_quote", status)
        METRICS.inc_reason(f"plugin_quote:{job.plugin.id}", status)
        METRICS.observe(f"plugin_quote_ms:{job.plugin.id}", elapsed_ms)
        if error:
            log.debug("%s%s: %s", job.plugin.id, f" via {job.hub}" if job.hub else "", error)
        outcome = PluginOutcome(
            dex_id=job.plugin.id,
            status=status,
            elapsed_ms=elapsed_ms,
            via=job.hub,
            amount_out=cand.amount_out if cand is not None else None,
            error=error,
        )
        return job, cand, outcome

    async def aggregate(
        self,
        chain: ChainConfig,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        client: Any,
    ) -> AggregationResult:
        amount_in = int(amount_in)
        if amount_in <= 0:
            return AggregationResult(best=None)
        norm_in = normalize(chain, token_in.address)
        norm_out = normalize(chain, token_out.address)
        if same_address(norm_in, norm_out):
            return AggregationResult(best=None)

        jobs = self._jobs(chain, norm_in, norm_out)
        if not jobs:
            log.info("no plugins registered for chain %s", chain.chain_id)
            return AggregationResult(best=None)

        with METRICS.timer("aggregate_ms"):
            settled = await asyncio.gather(
                *[self._run_job(job, chain, token_in, token_out, amount_in, client) for job in jobs]
            )

        ranked_input: List[Tuple[RouteCandidate, int, int]] = []
        outcomes: List[PluginOutcome] = []
        for job, cand, outcome in settled:
            outcomes.append(outcome)
            if cand is None or cand.amount_out <= 0:
                continue
            if not same_address(cand.hops[0].token_in, norm_in) or not same_address(cand.hops[-1].token_out, norm_out):
                log.debug("%s: candidate endpoints do not match the request, dropped", job.plugin.id)
                continue
            ranked_input.append((cand, job.plugin_index, job.seq))

        ranked = rank_candidates(ranked_input)
        METRICS.inc("aggregate_total")
        if not ranked:
            METRICS.inc("aggregate_no_route_total")
            log.info(
                "no route chain=%s %s -> %s amount=%s (%d plugin calls)",
                chain.chain_id,
                token_in.symbol or token_in.address,
                token_out.symbol or token_out.address,
                amount_in,
                len(jobs),
            )
            return AggregationResult(best=None, outcomes=outcomes)

        best = ranked[0]
        log.info(
            "best route chain=%s %s -> %s via %s (%d hop%s) out=%s, %d candidates",
            chain.chain_id,
            token_in.symbol or token_in.address,
            token_out.symbol or token_out.address,
            best.dex_id,
            len(best.hops),
            "" if best.is_direct else "s",
            best.amount_out,
            len(ranked),
        )
        return AggregationResult(best=best, alternatives=ranked[1:], outcomes=outcomes)
