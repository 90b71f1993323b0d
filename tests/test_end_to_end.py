import json

import pytest
from eth_abi import decode, encode

from dexroute.dex.registry import PluginRegistry
from dexroute.dex.types import RouteCandidate
from dexroute.dex.uniswap_v3 import SIG_QUOTE_V2, ConcentratedLiquidityPlugin
from dexroute.errors import ExecutionEncodingError
from dexroute.service import EXECUTION_ERROR, SwapQuoteService
from fakes import USDC, WETH, addr, calldata_args, make_chain, sel

QUOTER_A = addr("a")
QUOTER_B = addr("b")
ROUTER_A = addr("c")
ROUTER_B = addr("d")
USER = addr("7")


def _linear_quoter(numerator: int, fee_tier: int):
    """USDC -> WETH at a fixed rate through a single fee tier; everything else reverts."""

    def _handler(args: bytes) -> bytes:
        ((tin, tout, amount, fee, _limit),) = decode(["(address,address,uint256,uint24,uint160)"], args)
        if fee != fee_tier or tin.lower() != USDC.lower() or tout.lower() != WETH.lower():
            raise RuntimeError("no pool")
        return encode(["uint256", "uint160", "uint32", "uint256"], [amount * numerator, 0, 1, 120_000])

    return _handler


def _service(fake_client) -> SwapQuoteService:
    plugins = [
        ConcentratedLiquidityPlugin(dex_id="dex-a", name="Dex A", chain_ids=[1], quoter=QUOTER_A, router=ROUTER_A),
        ConcentratedLiquidityPlugin(dex_id="dex-b", name="Dex B", chain_ids=[1], quoter=QUOTER_B, router=ROUTER_B),
    ]
    # 1 raw USDC unit (6 decimals) -> 5e8 wei, so 1000 USDC -> 0.5 WETH
    fake_client.on(QUOTER_A, SIG_QUOTE_V2, _linear_quoter(5 * 10**8, 500))
    fake_client.on(QUOTER_B, SIG_QUOTE_V2, _linear_quoter(49 * 10**7, 3000))
    return SwapQuoteService(PluginRegistry(plugins), {1: make_chain()}, lambda chain: fake_client)


@pytest.mark.asyncio
async def test_best_of_two_sources_with_executable_calldata(fake_client) -> None:
    svc = _service(fake_client)
    out = await svc.handle(
        {
            "chainId": 1,
            "tokenIn": USDC,
            "tokenOut": WETH,
            "amountIn": "1000",
            "amountInRaw": False,
            "slippageBps": 50,
            "userAddress": USER,
            "deadline": 1_700_000_000,
        }
    )
    assert out["success"] is True

    best = out["bestRoute"]
    assert best["dexId"] == "dex-a"
    assert best["amountIn"] == str(1000 * 10**6)
    assert best["amountOut"] == str(5 * 10**17)
    assert best["hops"][0]["feeTier"] == 500
    assert best["hops"][0]["detail"] == "Fee: 0.05%"
    assert best["priceImpactBps"] == 0

    assert [r["dexId"] for r in out["alternatives"]] == ["dex-b"]
    assert out["alternatives"][0]["amountOut"] == str(49 * 10**16)
    assert out["alternatives"][0]["hops"][0]["feeTier"] == 3000

    ex = out["execution"]
    assert ex["swap"]["to"] == ROUTER_A
    assert ex["swap"]["value"] == "0"
    s, (args,) = calldata_args(ex["swap"]["data"], ["(address,address,uint24,address,uint256,uint256,uint160)"])
    assert s == sel("exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))")
    token_in, token_out, fee, recipient, amount_in, min_out, _limit = args
    assert fee == 500
    assert token_in.lower() == USDC.lower()
    assert token_out.lower() == WETH.lower()
    assert recipient.lower() == USER
    assert amount_in == 1000 * 10**6
    assert min_out == 5 * 10**17 * 9950 // 10000
    assert ex["minAmountOut"] == str(min_out)

    # no allowance handler: the read fails, so an approval for router A is requested
    assert len(ex["approvals"]) == 1
    _, (spender, approved) = calldata_args(ex["approvals"][0]["data"], ["address", "uint256"])
    assert spender.lower() == ROUTER_A
    assert approved == 1000 * 10**6


@pytest.mark.asyncio
async def test_quote_only_without_user_address(fake_client) -> None:
    svc = _service(fake_client)
    out = await svc.handle({"chainId": 1, "tokenIn": "USDC", "tokenOut": "WETH", "amountIn": str(1000 * 10**6)})
    assert out["success"] is True
    assert out["bestRoute"]["dexId"] == "dex-a"
    assert "execution" not in out


async def _quote_over_json(svc: SwapQuoteService) -> dict:
    out = await svc.handle({"chainId": 1, "tokenIn": "USDC", "tokenOut": "WETH", "amountIn": str(1000 * 10**6)})
    assert out["success"] is True
    return json.loads(json.dumps(out))


def _swap_fee(execution: dict) -> int:
    _, (args,) = calldata_args(execution["swap"]["data"], ["(address,address,uint24,address,uint256,uint256,uint160)"])
    return args[2]


def _build_payload(quote: dict, **overrides) -> dict:
    payload = {"chainId": 1, "quote": quote, "recipient": USER, "slippageBps": 50, "deadline": 1_700_000_000}
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_build_from_returned_quote(fake_client) -> None:
    svc = _service(fake_client)
    quote = await _quote_over_json(svc)
    calls_after_quote = fake_client.count(QUOTER_A)

    out = await svc.build(_build_payload(quote))
    assert out["success"] is True
    assert out["dexId"] == "dex-a"
    ex = out["execution"]
    assert ex["swap"]["to"] == ROUTER_A
    assert _swap_fee(ex) == 500
    assert ex["minAmountOut"] == str(5 * 10**17 * 9950 // 10000)
    assert len(ex["approvals"]) == 1
    # building never goes back to the quoter
    assert fake_client.count(QUOTER_A) == calls_after_quote


@pytest.mark.asyncio
async def test_build_reads_fee_from_detail_without_fee_tier(fake_client) -> None:
    svc = _service(fake_client)
    quote = await _quote_over_json(svc)
    hop = quote["bestRoute"]["hops"][0]
    del hop["feeTier"]
    assert hop["detail"] == "Fee: 0.05%"

    out = await svc.build(_build_payload(quote))
    assert out["success"] is True
    assert _swap_fee(out["execution"]) == 500


@pytest.mark.asyncio
async def test_build_rejects_malformed_fee_detail(fake_client, chain) -> None:
    svc = _service(fake_client)
    quote = await _quote_over_json(svc)
    hop = quote["bestRoute"]["hops"][0]
    del hop["feeTier"]
    hop["detail"] = "Fee: lots"

    route = RouteCandidate.from_dict(quote["bestRoute"])
    with pytest.raises(ExecutionEncodingError):
        await svc.builder.build(
            chain,
            route,
            token_in=chain.find_token("USDC"),
            token_out=chain.find_token("WETH"),
            slippage_bps=50,
            recipient=USER,
        )

    out = await svc.build(_build_payload(quote))
    assert out["success"] is False
    assert out["error"].startswith(EXECUTION_ERROR)
    assert "execution" not in out


@pytest.mark.asyncio
async def test_build_rejects_bad_requests(fake_client) -> None:
    svc = _service(fake_client)
    quote = await _quote_over_json(svc)

    out = await svc.build({"chainId": 1, "recipient": USER})
    assert out["success"] is False
    assert "missing required parameters" in out["error"]

    out = await svc.build(_build_payload(quote, chainId=56))
    assert out["success"] is False
    assert "quote is for chainId 1" in out["error"]

    out = await svc.build(_build_payload(quote, recipient=None))
    assert out["error"] == "missing recipient"

    broken = json.loads(json.dumps(quote))
    broken["bestRoute"]["hops"][0]["path"] = [USDC]
    out = await svc.build(_build_payload(broken))
    assert out["error"].startswith("invalid quote")
