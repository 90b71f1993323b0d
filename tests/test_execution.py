import pytest

from dexroute import config
from dexroute.dex.registry import PluginRegistry
from dexroute.dex.types import RouteCandidate, RouteHop
from dexroute.errors import ConfigurationError, ExecutionEncodingError
from dexroute.execution import SwapExecutionBuilder, apply_slippage, default_deadline
from infra.metrics import METRICS
from fakes import DAI, NATIVE, USDC, WETH, DummyPlugin, addr, calldata_args, sel, words

ROUTER = addr("8")
USER = addr("7")


def test_slippage_half_percent() -> None:
    assert apply_slippage(1_000_000, 50) == 995_000


def test_slippage_rounds_down() -> None:
    assert apply_slippage(999, 50) == 994
    assert apply_slippage(1, 1) == 0


def test_slippage_bounds() -> None:
    assert apply_slippage(12345, 0) == 12345
    assert apply_slippage(12345, 10_000) == 0
    for bad in (-1, 10_001):
        with pytest.raises(ValueError):
            apply_slippage(12345, bad)


def test_default_deadline_offsets_now() -> None:
    assert default_deadline(now=1_000.0) == 1_000 + config.DEFAULT_DEADLINE_S


def _route(dex_id="dummy", token_in=USDC, token_out=WETH, amount_out=2_000_000, chain_id=1) -> RouteCandidate:
    hop = RouteHop(
        dex_id=dex_id,
        dex_name=dex_id.title(),
        kind="TEST",
        detail="test",
        pool_or_quoter=addr("1"),
        path=(token_in, token_out),
    )
    return RouteCandidate(
        chain_id=chain_id,
        dex_id=dex_id,
        dex_name=dex_id.title(),
        amount_in=1_000_000,
        amount_out=amount_out,
        hops=(hop,),
    )


def _builder(**kwargs):
    plugin = DummyPlugin("dummy", router=ROUTER, **kwargs)
    return SwapExecutionBuilder(PluginRegistry([plugin])), plugin


@pytest.mark.asyncio
async def test_builds_swap_with_min_out_and_description(chain) -> None:
    builder, plugin = _builder()
    ex = await builder.build(
        chain,
        _route(),
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("WETH"),
        slippage_bps=50,
        recipient=USER,
        deadline=1_700_000_000,
    )
    assert ex.min_amount_out == 1_990_000
    assert ex.approvals == []
    assert ex.swap.to == ROUTER
    assert ex.swap.description == "Swap USDC for WETH on Dummy"
    s, (amount_in, min_out) = calldata_args(ex.swap.data, ["uint256", "uint256"])
    assert s == sel("swap(uint256,uint256)")
    assert (amount_in, min_out) == (1_000_000, 1_990_000)
    assert plugin.built[0].deadline == 1_700_000_000
    assert plugin.built[0].recipient == USER
    assert METRICS.counter("execution_built_total") == 1

    out = ex.to_dict()
    assert out["minAmountOut"] == "1990000"
    assert out["swap"]["value"] == "0"


@pytest.mark.asyncio
async def test_missing_deadline_gets_default(chain) -> None:
    builder, plugin = _builder()
    await builder.build(
        chain,
        _route(),
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("WETH"),
        slippage_bps=50,
        recipient=USER,
    )
    assert plugin.built[0].deadline > config.DEFAULT_DEADLINE_S


@pytest.mark.asyncio
async def test_approval_when_allowance_is_short(chain, fake_client) -> None:
    fake_client.on(USDC, "allowance(address,address)", words(0))
    builder, _ = _builder()
    ex = await builder.build(
        chain,
        _route(),
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("WETH"),
        slippage_bps=50,
        recipient=USER,
        deadline=1_700_000_000,
        owner=USER,
        client=fake_client,
    )
    assert len(ex.approvals) == 1
    approve = ex.approvals[0]
    assert approve.to == USDC
    assert approve.description == "Approve USDC for Dummy"
    s, (spender, amount) = calldata_args(approve.data, ["address", "uint256"])
    assert s == sel("approve(address,uint256)")
    assert spender.lower() == ROUTER
    assert amount == 1_000_000


@pytest.mark.asyncio
async def test_no_approval_when_allowance_covers_amount(chain, fake_client) -> None:
    fake_client.on(USDC, "allowance(address,address)", words(10**30))
    builder, _ = _builder()
    ex = await builder.build(
        chain,
        _route(),
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("WETH"),
        slippage_bps=50,
        recipient=USER,
        deadline=1_700_000_000,
        owner=USER,
        client=fake_client,
    )
    assert ex.approvals == []


@pytest.mark.asyncio
async def test_native_input_needs_no_approval(chain, fake_client) -> None:
    builder, _ = _builder()
    ex = await builder.build(
        chain,
        _route(token_in=WETH, token_out=USDC),
        token_in=chain.find_token(NATIVE),
        token_out=chain.find_token("USDC"),
        slippage_bps=50,
        recipient=USER,
        deadline=1_700_000_000,
        owner=USER,
        client=fake_client,
    )
    assert ex.approvals == []
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_unknown_dex_is_configuration_error(chain) -> None:
    builder, _ = _builder()
    with pytest.raises(ConfigurationError):
        await builder.build(
            chain,
            _route(dex_id="gone"),
            token_in=chain.find_token("USDC"),
            token_out=chain.find_token("WETH"),
            slippage_bps=50,
            recipient=USER,
        )


@pytest.mark.asyncio
async def test_route_from_other_chain_is_configuration_error(chain) -> None:
    builder, _ = _builder()
    with pytest.raises(ConfigurationError):
        await builder.build(
            chain,
            _route(chain_id=56),
            token_in=chain.find_token("USDC"),
            token_out=chain.find_token("WETH"),
            slippage_bps=50,
            recipient=USER,
        )


@pytest.mark.asyncio
async def test_encoding_error_propagates(chain) -> None:
    builder, _ = _builder(build_error="bad fee tier")
    with pytest.raises(ExecutionEncodingError):
        await builder.build(
            chain,
            _route(),
            token_in=chain.find_token("USDC"),
            token_out=chain.find_token("WETH"),
            slippage_bps=50,
            recipient=USER,
        )


@pytest.mark.asyncio
async def test_route_endpoints_must_match_tokens(chain) -> None:
    builder, _ = _builder()
    with pytest.raises(ExecutionEncodingError):
        await builder.build(
            chain,
            _route(token_in=DAI),
            token_in=chain.find_token("USDC"),
            token_out=chain.find_token("WETH"),
            slippage_bps=50,
            recipient=USER,
        )
