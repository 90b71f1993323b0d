# dexroute/dex/uniswap_v3.py

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from eth_abi import encode
from eth_utils import to_checksum_address

from dexroute.chain_config import ChainConfig
from dexroute.dex.base import DexPlugin
from dexroute.dex.encoding import (
    decode_words,
    encode_call,
    encode_v3_path,
    format_fee_detail,
    hop_fee_tier,
    route_tokens,
    selector,
)
from dexroute.dex.types import KIND_UNIV3, DexQuoteParams, QuoteCall, RouteCandidate, SwapParams, TxRequest
from dexroute.errors import ExecutionEncodingError

UNISWAP_FEE_TIERS = (100, 500, 3000, 10000)
PANCAKE_FEE_TIERS = (100, 500, 2500, 10000)

# SwapRouter02 / Pancake SmartRouter: no deadline in the structs,
# deadline enforced by multicall(uint256,bytes[]).
ROUTER_02 = "router02"
# Original SwapRouter and its forks: deadline inside every struct.
ROUTER_V1 = "router_v1"

SIG_QUOTE_V2 = "quoteExactInputSingle((address,address,uint256,uint24,uint160))"

SIG_EXACT_INPUT_SINGLE_02 = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))"
SIG_EXACT_INPUT_02 = "exactInput((bytes,address,uint256,uint256))"
SIG_MULTICALL_DEADLINE = "multicall(uint256,bytes[])"

SIG_EXACT_INPUT_SINGLE_V1 = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))"
SIG_EXACT_INPUT_V1 = "exactInput((bytes,address,uint256,uint256,uint256))"
SIG_MULTICALL = "multicall(bytes[])"

SIG_UNWRAP_WETH9 = "unwrapWETH9(uint256,address)"

# SwapRouter02 alias for "the router itself" as swap recipient.
ADDRESS_THIS = "0x0000000000000000000000000000000000000002"


class ConcentratedLiquidityPlugin(DexPlugin):
    """Uniswap V3 style pools: one pool per fee tier, QuoterV2 quoting.

    Every tier is quoted in a single multicall; the highest output wins and
    ties keep the earlier tier in `fee_tiers`.
    """

    supports_multi_hop = True

    def __init__(
        self,
        *,
        dex_id: str,
        name: str,
        chain_ids: Iterable[int],
        quoter: str,
        router: str,
        fee_tiers: Sequence[int] = UNISWAP_FEE_TIERS,
        router_style: str = ROUTER_02,
    ):
        super().__init__(dex_id=dex_id, name=name, kind=KIND_UNIV3, chain_ids=chain_ids, router_address=router)
        if router_style not in (ROUTER_02, ROUTER_V1):
            raise ValueError(f"unknown router style {router_style!r}")
        self.quoter = quoter
        self.fee_tiers = tuple(int(f) for f in fee_tiers)
        self.router_style = router_style

    def build_quote_calls(self, params: DexQuoteParams) -> List[QuoteCall]:
        pair = self._pair(params)
        if pair is None:
            return []
        token_in, token_out = pair
        amount_in = int(params.amount_in)
        calls: List[QuoteCall] = []
        for fee in self.fee_tiers:
            data = "0x" + selector(SIG_QUOTE_V2) + encode(
                ["(address,address,uint256,uint24,uint160)"],
                [(to_checksum_address(token_in), to_checksum_address(token_out), amount_in, fee, 0)],
            ).hex()
            calls.append(QuoteCall(to=self.quoter, data=data, decode=self._decoder(params, token_in, token_out, fee)))
        return calls

    def _decoder(self, params: DexQuoteParams, token_in: str, token_out: str, fee: int):
        def _decode(raw: bytes) -> Optional[RouteCandidate]:
            # amountOut, sqrtPriceX96After, initializedTicksCrossed, gasEstimate
            if len(raw) < 32 * 4:
                return None
            amount_out, _sqrt_after, _ticks, gas_estimate = decode_words(["uint256", "uint160", "uint32", "uint256"], raw)
            hop = self._hop(format_fee_detail(fee), self.quoter, [token_in, token_out], fee_tier=fee)
            return self._candidate(params.chain, params.amount_in, int(amount_out), [hop], gas_estimate=int(gas_estimate))

        return _decode

    def build_swap_calldata(self, chain: ChainConfig, params: SwapParams) -> TxRequest:
        native_in, native_out, _token_in, _token_out = self._native_flags(chain, params)
        if native_in and native_out:
            raise ExecutionEncodingError("native to native swap has no route")
        fees = [hop_fee_tier(h, self.fee_tiers) for h in params.hops]
        tokens = [to_checksum_address(t) for t in route_tokens(params.hops)]
        recipient = to_checksum_address(params.recipient)
        if native_out:
            swap_recipient = ADDRESS_THIS if self.router_style == ROUTER_02 else to_checksum_address(str(self.router_address))
        else:
            swap_recipient = recipient

        swap_data = self._swap_data(tokens, fees, swap_recipient, params)
        value = int(params.amount_in) if native_in else 0
        if not native_out:
            return TxRequest(to=str(self.router_address), data=swap_data, value=value)

        unwrap = encode_call(SIG_UNWRAP_WETH9, ["uint256", "address"], [int(params.min_amount_out), recipient])
        inner = [bytes.fromhex(swap_data[2:]), bytes.fromhex(unwrap[2:])]
        if self.router_style == ROUTER_02:
            data = encode_call(SIG_MULTICALL_DEADLINE, ["uint256", "bytes[]"], [int(params.deadline), inner])
        else:
            data = encode_call(SIG_MULTICALL, ["bytes[]"], [inner])
        return TxRequest(to=str(self.router_address), data=data, value=value)

    def _swap_data(self, tokens: List[str], fees: List[int], recipient: str, params: SwapParams) -> str:
        amount_in = int(params.amount_in)
        min_out = int(params.min_amount_out)
        deadline = int(params.deadline)
        if len(fees) == 1:
            if self.router_style == ROUTER_02:
                return encode_call(
                    SIG_EXACT_INPUT_SINGLE_02,
                    ["(address,address,uint24,address,uint256,uint256,uint160)"],
                    [(tokens[0], tokens[1], fees[0], recipient, amount_in, min_out, 0)],
                )
            return encode_call(
                SIG_EXACT_INPUT_SINGLE_V1,
                ["(address,address,uint24,address,uint256,uint256,uint256,uint160)"],
                [(tokens[0], tokens[1], fees[0], recipient, deadline, amount_in, min_out, 0)],
            )

        path = encode_v3_path(tokens, fees)
        if self.router_style == ROUTER_02:
            return encode_call(
                SIG_EXACT_INPUT_02,
                ["(bytes,address,uint256,uint256)"],
                [(path, recipient, amount_in, min_out)],
            )
        return encode_call(
            SIG_EXACT_INPUT_V1,
            ["(bytes,address,uint256,uint256,uint256)"],
            [(path, recipient, deadline, amount_in, min_out)],
        )
