from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

from eth_utils import to_checksum_address

from dexroute.chain_config import ChainConfig
from dexroute.dex.base import DexPlugin
from dexroute.dex.encoding import decode_words, encode_call, format_fee_detail, route_tokens
from dexroute.dex.types import KIND_UNIV2, DexQuoteParams, QuoteCall, RouteCandidate, SwapParams, TxRequest
from dexroute.errors import ExecutionEncodingError
from infra.multicall import Call, multicall

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SIG_GET_PAIR = "getPair(address,address)"
SIG_TOKEN0 = "token0()"
SIG_GET_RESERVES = "getReserves()"
SIG_GET_AMOUNTS_OUT = "getAmountsOut(uint256,address[])"
SIG_SWAP_EXACT_TOKENS_FOR_TOKENS = "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)"
SIG_SWAP_EXACT_ETH_FOR_TOKENS = "swapExactETHForTokens(uint256,address[],address,uint256)"
SIG_SWAP_EXACT_TOKENS_FOR_ETH = "swapExactTokensForETH(uint256,uint256,address[],address,uint256)"


def amount_out_constant_product(
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    fee_numerator: int = 997,
    fee_denominator: int = 1000,
) -> int:
    """Uniswap V2 getAmountOut in integer math; 0 when any input is empty."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    amount_in_with_fee = int(amount_in) * int(fee_numerator)
    numerator = amount_in_with_fee * int(reserve_out)
    denominator = int(reserve_in) * int(fee_denominator) + amount_in_with_fee
    if denominator <= 0:
        return 0
    return numerator // denominator


class _UniV2Base(DexPlugin):
    """Shared execution side of V2 forks: the standard Router02 entry points."""

    supports_multi_hop = True

    def __init__(
        self,
        *,
        dex_id: str,
        name: str,
        chain_ids: Iterable[int],
        router: str,
        fee_numerator: int = 997,
        fee_denominator: int = 1000,
    ):
        super().__init__(dex_id=dex_id, name=name, kind=KIND_UNIV2, chain_ids=chain_ids, router_address=router)
        if not 0 < int(fee_numerator) <= int(fee_denominator):
            raise ValueError(f"invalid V2 fee {fee_numerator}/{fee_denominator}")
        self.fee_numerator = int(fee_numerator)
        self.fee_denominator = int(fee_denominator)

    @property
    def fee_tier(self) -> int:
        """Pool fee in hundredths of a bip (0.3% -> 3000)."""
        return (self.fee_denominator - self.fee_numerator) * 1_000_000 // self.fee_denominator

    def _detail(self) -> str:
        return format_fee_detail(self.fee_tier)

    def build_swap_calldata(self, chain: ChainConfig, params: SwapParams) -> TxRequest:
        native_in, native_out, _token_in, _token_out = self._native_flags(chain, params)
        if native_in and native_out:
            raise ExecutionEncodingError("native to native swap has no route")
        path = [to_checksum_address(t) for t in route_tokens(params.hops)]
        recipient = to_checksum_address(params.recipient)
        deadline = int(params.deadline)
        if native_in:
            data = encode_call(
                SIG_SWAP_EXACT_ETH_FOR_TOKENS,
                ["uint256", "address[]", "address", "uint256"],
                [int(params.min_amount_out), path, recipient, deadline],
            )
            return TxRequest(to=str(self.router_address), data=data, value=int(params.amount_in))
        if native_out:
            sig = SIG_SWAP_EXACT_TOKENS_FOR_ETH
        else:
            sig = SIG_SWAP_EXACT_TOKENS_FOR_TOKENS
        data = encode_call(
            sig,
            ["uint256", "uint256", "address[]", "address", "uint256"],
            [int(params.amount_in), int(params.min_amount_out), path, recipient, deadline],
        )
        return TxRequest(to=str(self.router_address), data=data, value=0)


class UniV2PairPlugin(_UniV2Base):
    """Constant-product pools quoted from pair reserves with the fork's fee."""

    def __init__(self, *, factory: str, **kwargs):
        super().__init__(**kwargs)
        self.factory = factory

    async def _get_pair(self, client, token_a: str, token_b: str) -> Optional[str]:
        data = encode_call(SIG_GET_PAIR, ["address", "address"], [to_checksum_address(token_a), to_checksum_address(token_b)])
        raw = await client.eth_call(self.factory, data)
        pair = str(decode_words(["address"], raw)[0])
        if pair.lower() == ZERO_ADDRESS:
            return None
        return pair

    async def _get_reserves(self, client, pair: str) -> Optional[Tuple[str, int, int]]:
        results = await multicall(
            client,
            [
                Call(pair, encode_call(SIG_TOKEN0, [], [])),
                Call(pair, encode_call(SIG_GET_RESERVES, [], [])),
            ],
        )
        if not all(r.ok for r in results):
            return None
        token0 = str(decode_words(["address"], results[0].return_data)[0])
        r0, r1, _ts = decode_words(["uint112", "uint112", "uint32"], results[1].return_data)
        return token0, int(r0), int(r1)

    async def quote_single_hop(self, params: DexQuoteParams) -> Optional[RouteCandidate]:
        pair_tokens = self._pair(params)
        if pair_tokens is None:
            return None
        token_in, token_out = pair_tokens
        try:
            pair = await self._get_pair(params.client, token_in, token_out)
            if not pair:
                return None
            state = await self._get_reserves(params.client, pair)
        except Exception as exc:
            log.debug("%s: pair lookup failed: %s", self.id, exc)
            return None
        if state is None:
            return None
        token0, r0, r1 = state
        if token0.lower() == token_in.lower():
            reserve_in, reserve_out = r0, r1
        else:
            reserve_in, reserve_out = r1, r0
        amount_out = amount_out_constant_product(
            int(params.amount_in), reserve_in, reserve_out, self.fee_numerator, self.fee_denominator
        )
        hop = self._hop(
            self._detail(),
            pair,
            [token_in, token_out],
            fee_tier=self.fee_tier,
            pair=pair,
            reserve_in=reserve_in,
            reserve_out=reserve_out,
        )
        return self._candidate(params.chain, params.amount_in, amount_out, [hop], gas_estimate=90_000)


class UniV2RouterPlugin(_UniV2Base):
    """V2 forks quoted through the router's getAmountsOut."""

    def build_quote_calls(self, params: DexQuoteParams) -> List[QuoteCall]:
        pair_tokens = self._pair(params)
        if pair_tokens is None:
            return []
        token_in, token_out = pair_tokens
        data = encode_call(
            SIG_GET_AMOUNTS_OUT,
            ["uint256", "address[]"],
            [int(params.amount_in), [to_checksum_address(token_in), to_checksum_address(token_out)]],
        )
        router = str(self.router_address)

        def _decode(raw: bytes) -> Optional[RouteCandidate]:
            (amounts,) = decode_words(["uint256[]"], raw)
            if len(amounts) < 2:
                return None
            hop = self._hop(self._detail(), router, [token_in, token_out], fee_tier=self.fee_tier)
            return self._candidate(params.chain, params.amount_in, int(amounts[-1]), [hop], gas_estimate=90_000)

        return [QuoteCall(to=router, data=data, decode=_decode)]
