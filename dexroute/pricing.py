# dexroute/pricing.py
#
# Display metrics layered on top of a ranked route. Nothing here feeds back
# into ranking.

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

from dexroute import config
from dexroute.chain_config import ChainConfig
from dexroute.dex.registry import PluginRegistry
from dexroute.dex.types import DexQuoteParams, RouteCandidate

log = logging.getLogger(__name__)

BPS = 10_000


def probe_amount(amount_in: int, divisor: Optional[int] = None) -> int:
    div = max(1, int(divisor or config.PRICE_IMPACT_PROBE_DIVISOR))
    return max(1, int(amount_in) // div)


def impact_bps(amount_in: int, amount_out: int, probe_in: int, probe_out: int) -> Optional[int]:
    """Shortfall of the full-size rate against the probe rate, in bps (floored at 0)."""
    if amount_in <= 0 or probe_in <= 0 or probe_out <= 0:
        return None
    ratio = (int(amount_out) * int(probe_in) * BPS) // (int(amount_in) * int(probe_out))
    return max(0, BPS - ratio)


async def _requote_route(
    route: RouteCandidate,
    amount: int,
    *,
    registry: PluginRegistry,
    chain: ChainConfig,
    client: Any,
) -> Optional[int]:
    plugin = registry.get(route.dex_id)
    current = int(amount)
    for hop in route.hops:
        params = DexQuoteParams(
            chain=chain,
            token_in=chain.token_for(hop.token_in),
            token_out=chain.token_for(hop.token_out),
            amount_in=current,
            client=client,
        )
        cand = await plugin.quote_hop(params, hop)
        if cand is None or cand.amount_out <= 0:
            return None
        current = int(cand.amount_out)
    return current


async def estimate_price_impact(
    route: RouteCandidate,
    *,
    registry: PluginRegistry,
    chain: ChainConfig,
    client: Any,
    divisor: Optional[int] = None,
    timeout_s: Optional[float] = None,
) -> Optional[int]:
    """Price impact of `route` in integer basis points, or None when the
    probe quote is unavailable.

    Each leg is re-quoted at a small probe size through the pool it was
    quoted on; the probe's rate stands in for the spot price.
    """
    probe_in = probe_amount(route.amount_in, divisor)
    if probe_in >= route.amount_in:
        return 0
    try:
        probe_out = await asyncio.wait_for(
            _requote_route(route, probe_in, registry=registry, chain=chain, client=client),
            timeout=float(timeout_s or config.PLUGIN_QUOTE_TIMEOUT_S),
        )
    except asyncio.TimeoutError:
        log.debug("price impact probe timed out for %s", route.dex_id)
        return None
    except Exception as exc:
        log.debug("price impact probe failed for %s: %s", route.dex_id, exc)
        return None
    if probe_out is None:
        return None
    return impact_bps(route.amount_in, route.amount_out, probe_in, probe_out)


def confidence_score(
    best: RouteCandidate,
    candidates: Sequence[RouteCandidate],
    price_impact_bps: Optional[int],
) -> int:
    """0..100 heuristic for how much to trust the quoted output."""
    score = 100
    if price_impact_bps is None:
        score -= 25
    else:
        score -= min(50, int(price_impact_bps) // 20)
    score -= 10 * max(0, len(best.hops) - 1)

    sources = {c.dex_id for c in candidates} | {best.dex_id}
    if len(sources) < 2:
        score -= 15

    runner_up = None
    for c in candidates:
        if c is best:
            continue
        if runner_up is None or c.amount_out > runner_up.amount_out:
            runner_up = c
    if runner_up is not None and best.amount_out > 0:
        spread = ((best.amount_out - runner_up.amount_out) * BPS) // best.amount_out
        if spread > 500:
            score -= 10
    return max(0, min(100, score))
