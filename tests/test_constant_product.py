from decimal import ROUND_FLOOR, Decimal, localcontext

import pytest
from eth_abi import decode, encode

from dexroute.dex.types import DexQuoteParams
from dexroute.dex.uniswap_v2 import UniV2PairPlugin, amount_out_constant_product
from fakes import USDC, WETH, addr, words


def _reference(amount_in: int, reserve_in: int, reserve_out: int, num: int, den: int) -> int:
    with localcontext() as ctx:
        ctx.prec = 120
        x = Decimal(amount_in) * num * reserve_out / (Decimal(reserve_in) * den + Decimal(amount_in) * num)
        return int(x.to_integral_value(rounding=ROUND_FLOOR))


def test_quarter_percent_fee_exact_value() -> None:
    assert amount_out_constant_product(1000, 1_000_000, 2_000_000, 9975, 10000) == 1993


def test_default_fee_is_thirty_bips() -> None:
    assert amount_out_constant_product(1000, 1_000_000, 2_000_000) == 1992


@pytest.mark.parametrize(
    "amount_in,reserve_in,reserve_out",
    [
        (1, 10**18, 10**18),
        (10**6, 5 * 10**12, 3 * 10**21),
        (123_456_789, 987_654_321_000, 111_111_111_111),
        (10**24, 10**24, 10**24),
    ],
)
def test_matches_reference_without_drift(amount_in: int, reserve_in: int, reserve_out: int) -> None:
    for num, den in ((997, 1000), (9975, 10000)):
        assert amount_out_constant_product(amount_in, reserve_in, reserve_out, num, den) == _reference(
            amount_in, reserve_in, reserve_out, num, den
        )


def test_empty_inputs_give_zero() -> None:
    assert amount_out_constant_product(0, 10, 10) == 0
    assert amount_out_constant_product(10, 0, 10) == 0
    assert amount_out_constant_product(10, 10, 0) == 0


def _pair_plugin() -> UniV2PairPlugin:
    return UniV2PairPlugin(
        dex_id="pancake-v2",
        name="PancakeSwap V2",
        chain_ids=[1],
        factory=addr("f"),
        router=addr("e"),
        fee_numerator=9975,
        fee_denominator=10000,
    )


@pytest.mark.asyncio
async def test_pair_plugin_orients_reserves_by_token0(chain, fake_client) -> None:
    pair = addr("b")
    fake_client.on(addr("f"), "getPair(address,address)", encode(["address"], [pair]))
    # token0 is WETH, so reserve0 belongs to the output side of a USDC -> WETH swap
    fake_client.on(pair, "token0()", encode(["address"], [WETH]))
    fake_client.on(
        pair,
        "getReserves()",
        encode(["uint112", "uint112", "uint32"], [2_000_000, 1_000_000, 0]),
    )
    plugin = _pair_plugin()
    params = DexQuoteParams(
        chain=chain,
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("WETH"),
        amount_in=1000,
        client=fake_client,
    )
    cand = await plugin.quote_single_hop(params)
    assert cand is not None
    assert cand.amount_out == 1993
    hop = cand.hops[0]
    assert hop.fee_tier == 2500
    assert hop.detail == "Fee: 0.25%"
    assert hop.params["reserve_in"] == 1_000_000
    assert hop.params["reserve_out"] == 2_000_000
    assert [t.lower() for t in hop.path] == [USDC.lower(), WETH.lower()]


@pytest.mark.asyncio
async def test_pair_plugin_missing_pair_is_no_candidate(chain, fake_client) -> None:
    fake_client.on(addr("f"), "getPair(address,address)", encode(["address"], ["0x" + "00" * 20]))
    plugin = _pair_plugin()
    params = DexQuoteParams(
        chain=chain,
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("WETH"),
        amount_in=1000,
        client=fake_client,
    )
    assert await plugin.quote_single_hop(params) is None


@pytest.mark.asyncio
async def test_pair_plugin_factory_revert_is_no_candidate(chain, fake_client) -> None:
    plugin = _pair_plugin()
    params = DexQuoteParams(
        chain=chain,
        token_in=chain.find_token("USDC"),
        token_out=chain.find_token("DAI"),
        amount_in=1000,
        client=fake_client,
    )
    assert await plugin.quote_single_hop(params) is None


@pytest.mark.asyncio
async def test_pair_plugin_wraps_native_input(chain, fake_client) -> None:
    seen = []

    def _get_pair(args: bytes) -> bytes:
        a, b = decode(["address", "address"], args)
        seen.append((a.lower(), b.lower()))
        return encode(["address"], [addr("b")])

    fake_client.on(addr("f"), "getPair(address,address)", _get_pair)
    fake_client.on(addr("b"), "token0()", encode(["address"], [WETH]))
    fake_client.on(addr("b"), "getReserves()", words(10**21, 2 * 10**12, 0))
    plugin = _pair_plugin()
    params = DexQuoteParams(
        chain=chain,
        token_in=chain.find_token("ETH"),
        token_out=chain.find_token("USDC"),
        amount_in=10**18,
        client=fake_client,
    )
    cand = await plugin.quote_single_hop(params)
    assert cand is not None
    assert seen == [(WETH.lower(), USDC.lower())]
    assert cand.hops[0].path[0].lower() == WETH.lower()
