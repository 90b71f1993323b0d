from __future__ import annotations

from typing import Iterable, List, Optional

from eth_utils import to_checksum_address

from dexroute.chain_config import ChainConfig
from dexroute.dex.base import DexPlugin
from dexroute.dex.encoding import encode_address_path, encode_call, route_tokens
from dexroute.dex.types import KIND_ALGEBRA, DexQuoteParams, QuoteCall, RouteCandidate, SwapParams, TxRequest
from dexroute.errors import ExecutionEncodingError

SIG_QUOTE = "quoteExactInputSingle(address,address,uint256,uint160)"
SIG_EXACT_INPUT_SINGLE = "exactInputSingle((address,address,address,uint256,uint256,uint256,uint160))"
SIG_EXACT_INPUT = "exactInput((bytes,address,uint256,uint256,uint256))"
SIG_MULTICALL = "multicall(bytes[])"
SIG_UNWRAP = "unwrapWNativeToken(uint256,address)"


DYNAMIC_FEE_DETAIL = "Dynamic fee"


class AlgebraPlugin(DexPlugin):
    """Algebra pools: one pool per pair with a dynamic fee.

    There is no tier to sweep, so quoting is a single quoter call and the
    multi-hop path is plain concatenated addresses.
    """

    supports_multi_hop = True

    def __init__(self, *, dex_id: str, name: str, chain_ids: Iterable[int], quoter: str, router: str):
        super().__init__(dex_id=dex_id, name=name, kind=KIND_ALGEBRA, chain_ids=chain_ids, router_address=router)
        self.quoter = quoter

    def build_quote_calls(self, params: DexQuoteParams) -> List[QuoteCall]:
        pair = self._pair(params)
        if pair is None:
            return []
        token_in, token_out = pair
        data = encode_call(
            SIG_QUOTE,
            ["address", "address", "uint256", "uint160"],
            [to_checksum_address(token_in), to_checksum_address(token_out), int(params.amount_in), 0],
        )

        def _decode(raw: bytes) -> Optional[RouteCandidate]:
            # Quoter versions differ after the first word; amountOut always leads.
            if len(raw) < 32:
                return None
            amount_out = int.from_bytes(raw[:32], "big")
            hop = self._hop(DYNAMIC_FEE_DETAIL, self.quoter, [token_in, token_out])
            return self._candidate(params.chain, params.amount_in, amount_out, [hop])

        return [QuoteCall(to=self.quoter, data=data, decode=_decode)]

    def build_swap_calldata(self, chain: ChainConfig, params: SwapParams) -> TxRequest:
        native_in, native_out, _token_in, _token_out = self._native_flags(chain, params)
        if native_in and native_out:
            raise ExecutionEncodingError("native to native swap has no route")
        tokens = [to_checksum_address(t) for t in route_tokens(params.hops)]
        recipient = to_checksum_address(params.recipient)
        # the router holds the wrapped output until unwrapWNativeToken pays it out
        swap_recipient = to_checksum_address(str(self.router_address)) if native_out else recipient
        amount_in = int(params.amount_in)
        min_out = int(params.min_amount_out)
        deadline = int(params.deadline)

        if len(tokens) == 2:
            swap_data = encode_call(
                SIG_EXACT_INPUT_SINGLE,
                ["(address,address,address,uint256,uint256,uint256,uint160)"],
                [(tokens[0], tokens[1], swap_recipient, deadline, amount_in, min_out, 0)],
            )
        else:
            swap_data = encode_call(
                SIG_EXACT_INPUT,
                ["(bytes,address,uint256,uint256,uint256)"],
                [(encode_address_path(tokens), swap_recipient, deadline, amount_in, min_out)],
            )

        value = amount_in if native_in else 0
        if not native_out:
            return TxRequest(to=str(self.router_address), data=swap_data, value=value)
        unwrap = encode_call(SIG_UNWRAP, ["uint256", "address"], [min_out, recipient])
        data = encode_call(SIG_MULTICALL, ["bytes[]"], [[bytes.fromhex(swap_data[2:]), bytes.fromhex(unwrap[2:])]])
        return TxRequest(to=str(self.router_address), data=data, value=value)
