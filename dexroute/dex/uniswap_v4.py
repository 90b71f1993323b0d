# dexroute/dex/uniswap_v4.py
#
# Singleton pool manager pools are keyed by (currency0, currency1, fee,
# tickSpacing, hooks) instead of a deployed pair address. currency0 is the
# numerically lower address; zeroForOne follows from that ordering.

from __future__ import annotations

import logging
import time
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from dexroute import config, erc20
from dexroute.chain_config import ChainConfig
from dexroute.dex.base import DexPlugin
from dexroute.dex.encoding import decode_words, encode_call, format_fee_detail, hop_fee_tier, selector
from dexroute.dex.types import KIND_UNIV4, DexQuoteParams, QuoteCall, RouteCandidate, SwapParams, TxRequest
from dexroute.errors import ExecutionEncodingError
from dexroute.normalize import is_native

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# (fee, tickSpacing) pairs of the standard pool configurations.
DEFAULT_POOL_CONFIGS: Tuple[Tuple[int, int], ...] = ((100, 1), (500, 10), (3000, 60), (10000, 200))

POOL_KEY = "(address,address,uint24,int24,address)"
SIG_QUOTE = f"quoteExactInputSingle(({POOL_KEY},bool,uint128,bytes))"
SIG_EXECUTE = "execute(bytes,bytes[],uint256)"

# Universal Router commands
CMD_WRAP_ETH = 0x0B
CMD_UNWRAP_WETH = 0x0C
CMD_V4_SWAP = 0x10

# V4 router actions
ACTION_SWAP_EXACT_IN_SINGLE = 0x06
ACTION_SETTLE = 0x0B
ACTION_SETTLE_ALL = 0x0C
ACTION_TAKE = 0x0E

# Recipient placeholders understood by the Universal Router.
ADDRESS_THIS = "0x0000000000000000000000000000000000000002"
OPEN_DELTA = 0

MAX_UINT128 = (1 << 128) - 1
MAX_UINT160 = (1 << 160) - 1


def sort_currencies(token_a: str, token_b: str) -> Tuple[str, str, bool]:
    """(currency0, currency1, zero_for_one) for a swap token_a -> token_b."""
    a = int(token_a, 16)
    b = int(token_b, 16)
    if a == b:
        raise ValueError("identical currencies")
    if a < b:
        return token_a, token_b, True
    return token_b, token_a, False


def pool_key(token_a: str, token_b: str, fee: int, tick_spacing: int, hooks: str) -> Tuple[Any, ...]:
    c0, c1, _ = sort_currencies(token_a, token_b)
    return (to_checksum_address(c0), to_checksum_address(c1), int(fee), int(tick_spacing), to_checksum_address(hooks))


def pool_id(key: Tuple[Any, ...]) -> str:
    return "0x" + keccak(encode([POOL_KEY], [key])).hex()


class SingletonPoolPlugin(DexPlugin):
    """Uniswap V4 pools behind one PoolManager, quoted with the V4 quoter
    and executed through the Universal Router's V4_SWAP command."""

    def __init__(
        self,
        *,
        dex_id: str,
        name: str,
        chain_ids: Iterable[int],
        quoter: str,
        pool_manager: str,
        universal_router: str,
        pool_configs: Sequence[Tuple[int, int]] = DEFAULT_POOL_CONFIGS,
        hooks: str = ZERO_ADDRESS,
        permit2: Optional[str] = None,
    ):
        super().__init__(dex_id=dex_id, name=name, kind=KIND_UNIV4, chain_ids=chain_ids, router_address=universal_router)
        self.quoter = quoter
        self.pool_manager = pool_manager
        self.pool_configs = tuple((int(f), int(ts)) for f, ts in pool_configs)
        self.fee_tiers = tuple(f for f, _ in self.pool_configs)
        self.hooks = hooks
        self.permit2 = permit2 or config.PERMIT2_ADDRESS

    def build_quote_calls(self, params: DexQuoteParams) -> List[QuoteCall]:
        pair = self._pair(params)
        if pair is None:
            return []
        token_in, token_out = pair
        amount_in = int(params.amount_in)
        if amount_in > MAX_UINT128:
            return []
        _c0, _c1, zero_for_one = sort_currencies(token_in, token_out)
        calls: List[QuoteCall] = []
        for fee, tick_spacing in self.pool_configs:
            key = pool_key(token_in, token_out, fee, tick_spacing, self.hooks)
            data = "0x" + selector(SIG_QUOTE) + encode(
                [f"({POOL_KEY},bool,uint128,bytes)"],
                [(key, zero_for_one, amount_in, b"")],
            ).hex()
            calls.append(
                QuoteCall(to=self.quoter, data=data, decode=self._decoder(params, token_in, token_out, fee, tick_spacing, key))
            )
        return calls

    def _decoder(self, params: DexQuoteParams, token_in: str, token_out: str, fee: int, tick_spacing: int, key):
        def _decode(raw: bytes) -> Optional[RouteCandidate]:
            amount_out, gas_estimate = decode_words(["uint256", "uint256"], raw)
            hop = self._hop(
                f"{format_fee_detail(fee)} (tick spacing {tick_spacing})",
                self.quoter,
                [token_in, token_out],
                fee_tier=fee,
                tick_spacing=tick_spacing,
                hooks=self.hooks,
                pool_id=pool_id(key),
            )
            return self._candidate(params.chain, params.amount_in, int(amount_out), [hop], gas_estimate=int(gas_estimate))

        return _decode

    def _tick_spacing_for(self, hop: Any, fee: int) -> int:
        raw = hop.params.get("tick_spacing") if hop.params else None
        if raw is not None:
            return int(raw)
        for f, ts in self.pool_configs:
            if f == fee:
                return ts
        raise ExecutionEncodingError(f"no tick spacing known for fee {fee}")

    def build_swap_calldata(self, chain: ChainConfig, params: SwapParams) -> TxRequest:
        native_in, native_out, token_in, token_out = self._native_flags(chain, params)
        if native_in and native_out:
            raise ExecutionEncodingError("native to native swap has no route")
        if len(params.hops) != 1:
            raise ExecutionEncodingError(f"{self.id} executes single-pool routes only")
        hop = params.hops[0]
        fee = hop_fee_tier(hop, self.fee_tiers)
        tick_spacing = self._tick_spacing_for(hop, fee)
        hooks = (hop.params or {}).get("hooks") or self.hooks
        key = pool_key(token_in, token_out, fee, tick_spacing, hooks)
        _c0, _c1, zero_for_one = sort_currencies(token_in, token_out)
        amount_in = int(params.amount_in)
        min_out = int(params.min_amount_out)
        if amount_in > MAX_UINT128 or min_out > MAX_UINT128:
            raise ExecutionEncodingError("amount does not fit uint128")
        recipient = to_checksum_address(params.recipient)
        cur_in = to_checksum_address(token_in)
        cur_out = to_checksum_address(token_out)

        actions = bytes([ACTION_SWAP_EXACT_IN_SINGLE, ACTION_SETTLE if native_in else ACTION_SETTLE_ALL, ACTION_TAKE])
        swap_param = encode(
            [f"({POOL_KEY},bool,uint128,uint128,bytes)"],
            [(key, zero_for_one, amount_in, min_out, b"")],
        )
        if native_in:
            # the router wrapped msg.value itself, so it pays the pool manager
            settle_param = encode(["address", "uint256", "bool"], [cur_in, amount_in, False])
        else:
            settle_param = encode(["address", "uint256"], [cur_in, amount_in])
        take_recipient = ADDRESS_THIS if native_out else recipient
        take_param = encode(["address", "address", "uint256"], [cur_out, take_recipient, OPEN_DELTA])
        v4_input = encode(["bytes", "bytes[]"], [actions, [swap_param, settle_param, take_param]])

        commands = bytearray()
        inputs: List[bytes] = []
        if native_in:
            commands.append(CMD_WRAP_ETH)
            inputs.append(encode(["address", "uint256"], [ADDRESS_THIS, amount_in]))
        commands.append(CMD_V4_SWAP)
        inputs.append(v4_input)
        if native_out:
            commands.append(CMD_UNWRAP_WETH)
            inputs.append(encode(["address", "uint256"], [recipient, min_out]))

        data = encode_call(SIG_EXECUTE, ["bytes", "bytes[]", "uint256"], [bytes(commands), inputs, int(params.deadline)])
        return TxRequest(to=str(self.router_address), data=data, value=amount_in if native_in else 0)

    async def build_approvals(
        self,
        chain: ChainConfig,
        params: SwapParams,
        *,
        owner: str,
        client: object,
        token_symbol: str = "",
    ) -> List[TxRequest]:
        """Universal Router pulls ERC-20s through Permit2: token -> Permit2, then Permit2 -> router."""
        if is_native(params.token_in):
            return []
        amount_in = int(params.amount_in)
        label = token_symbol or params.token_in
        out: List[TxRequest] = []
        current = await erc20.allowance(client, token=params.token_in, owner=owner, spender=self.permit2)
        if current < amount_in:
            out.append(
                TxRequest(
                    to=params.token_in,
                    data=erc20.approve_calldata(self.permit2, amount_in),
                    value=0,
                    description=f"Approve {label} for Permit2",
                )
            )

        permit_amount, expiration = await self._permit2_allowance(client, owner, params.token_in)
        if permit_amount < amount_in or expiration <= int(time.time()):
            data = encode_call(
                "approve(address,address,uint160,uint48)",
                ["address", "address", "uint160", "uint48"],
                [
                    to_checksum_address(params.token_in),
                    to_checksum_address(str(self.router_address)),
                    min(amount_in, MAX_UINT160),
                    int(params.deadline),
                ],
            )
            out.append(
                TxRequest(to=self.permit2, data=data, value=0, description=f"Permit2 allowance of {label} for {self.name}")
            )
        return out

    async def _permit2_allowance(self, client: Any, owner: str, token: str) -> Tuple[int, int]:
        data = encode_call(
            "allowance(address,address,address)",
            ["address", "address", "address"],
            [to_checksum_address(owner), to_checksum_address(token), to_checksum_address(str(self.router_address))],
        )
        try:
            raw = await client.eth_call(self.permit2, data)
            amount, expiration, _nonce = decode_words(["uint160", "uint48", "uint48"], raw)
            return int(amount), int(expiration)
        except Exception as exc:
            log.debug("permit2 allowance read failed for %s: %s", token, exc)
            return 0, 0
