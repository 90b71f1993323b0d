from dataclasses import replace

import pytest
from eth_abi import decode, encode

from dexroute.dex.registry import PluginRegistry
from dexroute.dex.types import DexQuoteParams, RouteCandidate, RouteHop
from dexroute.dex.uniswap_v3 import SIG_QUOTE_V2, ConcentratedLiquidityPlugin
from dexroute.pricing import confidence_score, estimate_price_impact, impact_bps, probe_amount
from fakes import DAI, USDC, WETH, DummyPlugin, addr


def _cand(dex_id: str, amount_out: int, hops: int = 1, amount_in: int = 1_000_000) -> RouteCandidate:
    path = [USDC, DAI, WETH] if hops == 2 else [USDC, WETH]
    legs = tuple(
        RouteHop(dex_id=dex_id, dex_name=dex_id, kind="TEST", detail="test", pool_or_quoter=addr("1"), path=(a, b))
        for a, b in zip(path, path[1:])
    )
    return RouteCandidate(chain_id=1, dex_id=dex_id, dex_name=dex_id, amount_in=amount_in, amount_out=amount_out, hops=legs)


def test_probe_amount_has_floor_of_one() -> None:
    assert probe_amount(1_000_000, 1000) == 1000
    assert probe_amount(999, 1000) == 1
    assert probe_amount(0, 1000) == 1


def test_impact_of_linear_pool_is_zero() -> None:
    assert impact_bps(1_000_000, 2_000_000, 1000, 2000) == 0


def test_impact_measures_rate_shortfall() -> None:
    # full size fills 2% below the probe rate
    assert impact_bps(1_000_000, 1_960_000, 1000, 2000) == 200


def test_better_than_probe_is_floored_at_zero() -> None:
    assert impact_bps(1_000_000, 2_100_000, 1000, 2000) == 0


def test_impact_unknown_for_empty_probe() -> None:
    assert impact_bps(1_000_000, 2_000_000, 1000, 0) is None


@pytest.mark.asyncio
async def test_estimate_requotes_with_route_plugin(chain) -> None:
    def curve(amount: int) -> int:
        # 2 out per unit, minus 5% once the trade is large
        return amount * 2 if amount < 10_000 else amount * 2 * 95 // 100

    plugin = DummyPlugin("curvy", {(USDC, WETH): curve})
    route = _cand("curvy", curve(1_000_000))
    impact = await estimate_price_impact(route, registry=PluginRegistry([plugin]), chain=chain, client=None, divisor=1000)
    assert impact == 500
    assert plugin.calls == [(USDC.lower(), WETH.lower(), 1000)]


@pytest.mark.asyncio
async def test_estimate_chains_probe_through_every_hop(chain) -> None:
    plugin = DummyPlugin("hub", {(USDC, DAI): 10_000, (DAI, WETH): 20_000})
    route = _cand("hub", 2_000_000, hops=2)
    impact = await estimate_price_impact(route, registry=PluginRegistry([plugin]), chain=chain, client=None, divisor=1000)
    assert impact == 0
    assert plugin.calls[1] == (DAI.lower(), WETH.lower(), 1000)


@pytest.mark.asyncio
async def test_estimate_is_none_when_probe_fails(chain) -> None:
    plugin = DummyPlugin("broken", {(USDC, WETH): 10_000}, exc=RuntimeError("rpc down"))
    route = _cand("broken", 1_000_000)
    assert await estimate_price_impact(route, registry=PluginRegistry([plugin]), chain=chain, client=None) is None


@pytest.mark.asyncio
async def test_estimate_is_none_on_timeout(chain) -> None:
    plugin = DummyPlugin("slow", {(USDC, WETH): 10_000}, delay=2.0)
    route = _cand("slow", 1_000_000)
    impact = await estimate_price_impact(
        route, registry=PluginRegistry([plugin]), chain=chain, client=None, timeout_s=0.05
    )
    assert impact is None


@pytest.mark.asyncio
async def test_tiny_trade_has_no_impact(chain) -> None:
    plugin = DummyPlugin("dummy", {(USDC, WETH): 10_000})
    route = _cand("dummy", 1, amount_in=1)
    assert await estimate_price_impact(route, registry=PluginRegistry([plugin]), chain=chain, client=None) == 0
    assert plugin.calls == []


def test_confidence_full_marks() -> None:
    best = _cand("a", 1000)
    assert confidence_score(best, [best, _cand("b", 990)], 0) == 100


def test_confidence_penalties() -> None:
    best = _cand("a", 1000, hops=2)
    # unknown impact, extra hop, single source
    assert confidence_score(best, [best], None) == 100 - 25 - 10 - 15


def test_confidence_wide_spread_and_impact_cap() -> None:
    best = _cand("a", 1000)
    assert confidence_score(best, [best, _cand("b", 900)], 300) == 100 - 15 - 10
    assert confidence_score(best, [best, _cand("b", 999)], 5000) == 50


def test_confidence_is_clamped() -> None:
    best = _cand("a", 1000, hops=2)
    assert 0 <= confidence_score(best, [best], 10_000) <= 100


def _tiered_quoter(args: bytes) -> bytes:
    """Tier 500 pays 2x at any size; tier 100 pays 3x but only for dust."""
    ((_tin, _tout, amount, fee, _limit),) = decode(["(address,address,uint256,uint24,uint160)"], args)
    if fee == 500:
        out = amount * 2
    elif fee == 100 and amount < 10_000:
        out = amount * 3
    else:
        raise RuntimeError("no pool")
    return encode(["uint256", "uint160", "uint32", "uint256"], [out, 0, 1, 90_000])


@pytest.mark.asyncio
async def test_impact_requote_stays_on_the_route_pool(chain, fake_client) -> None:
    quoter = addr("9")
    plugin = ConcentratedLiquidityPlugin(dex_id="uni", name="Uni", chain_ids=[1], quoter=quoter, router=addr("8"))
    fake_client.on(quoter, SIG_QUOTE_V2, _tiered_quoter)
    params = DexQuoteParams(
        chain=chain,
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("WETH"),
        amount_in=1_000_000,
        client=fake_client,
    )
    route = await plugin.quote_single_hop(params)
    assert route.hops[0].fee_tier == 500
    assert route.amount_out == 2_000_000

    # at the small size a fresh sweep prefers the 3x dust pool
    small = await plugin.quote_single_hop(replace(params, amount_in=1000))
    assert small.hops[0].fee_tier == 100

    impact = await estimate_price_impact(
        route, registry=PluginRegistry([plugin]), chain=chain, client=fake_client, divisor=1000
    )
    assert impact == 0


@pytest.mark.asyncio
async def test_impact_unknown_when_route_pool_is_gone(chain, fake_client) -> None:
    quoter = addr("9")
    plugin = ConcentratedLiquidityPlugin(dex_id="uni", name="Uni", chain_ids=[1], quoter=quoter, router=addr("8"))
    fake_client.on(quoter, SIG_QUOTE_V2, _tiered_quoter)
    hop = RouteHop(
        dex_id="uni",
        dex_name="Uni",
        kind="UNIV3_LIKE",
        detail="Fee: 0.3%",
        pool_or_quoter=quoter,
        path=(USDC, WETH),
        fee_tier=3000,
    )
    route = RouteCandidate(chain_id=1, dex_id="uni", dex_name="Uni", amount_in=1_000_000, amount_out=1_900_000, hops=(hop,))
    impact = await estimate_price_impact(
        route, registry=PluginRegistry([plugin]), chain=chain, client=fake_client, divisor=1000
    )
    assert impact is None
