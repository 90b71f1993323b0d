from __future__ import annotations

import logging
from typing import Iterable, Optional

from eth_abi import encode
from eth_utils import to_checksum_address

from dexroute.chain_config import ChainConfig
from dexroute.dex.base import DexPlugin
from dexroute.dex.encoding import decode_words, encode_call, route_tokens
from dexroute.dex.types import KIND_SYNC_CLASSIC, KIND_SYNC_STABLE, DexQuoteParams, RouteCandidate, SwapParams, TxRequest
from dexroute.errors import ExecutionEncodingError

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SIG_GET_POOL = "getPool(address,address)"
SIG_GET_AMOUNT_OUT = "getAmountOut(address,uint256,address)"
SIG_SWAP = "swap(((address,bytes,address,bytes)[],address,uint256)[],uint256,uint256)"

# Step withdraw modes: keep in vault (hand over to the next pool),
# unwrap to the native coin, or pay out the ERC-20.
WITHDRAW_VAULT = 0
WITHDRAW_UNWRAPPED = 1
WITHDRAW_WRAPPED = 2

POOL_CLASSIC = "classic"
POOL_STABLE = "stable"


class SyncSwapPlugin(DexPlugin):
    """SyncSwap pools from one pool factory (classic or stable)."""

    supports_multi_hop = True

    def __init__(
        self,
        *,
        dex_id: str,
        name: str,
        chain_ids: Iterable[int],
        router: str,
        factory: str,
        pool_type: str = POOL_CLASSIC,
    ):
        if pool_type not in (POOL_CLASSIC, POOL_STABLE):
            raise ValueError(f"unknown SyncSwap pool type {pool_type!r}")
        kind = KIND_SYNC_CLASSIC if pool_type == POOL_CLASSIC else KIND_SYNC_STABLE
        super().__init__(dex_id=dex_id, name=name, kind=kind, chain_ids=chain_ids, router_address=router)
        self.factory = factory
        self.pool_type = pool_type

    async def _get_pool(self, client, token_a: str, token_b: str) -> Optional[str]:
        data = encode_call(SIG_GET_POOL, ["address", "address"], [to_checksum_address(token_a), to_checksum_address(token_b)])
        raw = await client.eth_call(self.factory, data)
        pool = str(decode_words(["address"], raw)[0])
        if pool.lower() == ZERO_ADDRESS:
            return None
        return pool

    async def quote_single_hop(self, params: DexQuoteParams) -> Optional[RouteCandidate]:
        pair = self._pair(params)
        if pair is None:
            return None
        token_in, token_out = pair
        try:
            pool = await self._get_pool(params.client, token_in, token_out)
            if pool is None:
                return None
            data = encode_call(
                SIG_GET_AMOUNT_OUT,
                ["address", "uint256", "address"],
                [to_checksum_address(token_in), int(params.amount_in), ZERO_ADDRESS],
            )
            raw = await params.client.eth_call(pool, data)
            (amount_out,) = decode_words(["uint256"], raw)
        except Exception as exc:
            log.debug("%s: quote failed: %s", self.id, exc)
            return None
        detail = "Classic Pool" if self.pool_type == POOL_CLASSIC else "Stable Pool"
        hop = self._hop(detail, pool, [token_in, token_out], pool=pool)
        return self._candidate(params.chain, params.amount_in, int(amount_out), [hop])

    def build_swap_calldata(self, chain: ChainConfig, params: SwapParams) -> TxRequest:
        native_in, native_out, token_in, _token_out = self._native_flags(chain, params)
        if native_in and native_out:
            raise ExecutionEncodingError("native to native swap has no route")
        route_tokens(params.hops)
        pools = []
        for i, hop in enumerate(params.hops):
            pool = (hop.params or {}).get("pool") or hop.pool_or_quoter
            if not pool or str(pool).lower() == ZERO_ADDRESS:
                raise ExecutionEncodingError(f"hop {i} has no pool address")
            pools.append(to_checksum_address(str(pool)))

        recipient = to_checksum_address(params.recipient)
        steps = []
        last = len(params.hops) - 1
        for i, hop in enumerate(params.hops):
            if i < last:
                to, mode = pools[i + 1], WITHDRAW_VAULT
            else:
                to, mode = recipient, (WITHDRAW_UNWRAPPED if native_out else WITHDRAW_WRAPPED)
            step_data = encode(["address", "address", "uint8"], [to_checksum_address(hop.token_in), to, mode])
            steps.append((pools[i], step_data, ZERO_ADDRESS, b""))

        path_token_in = ZERO_ADDRESS if native_in else to_checksum_address(token_in)
        paths = [(steps, path_token_in, int(params.amount_in))]
        data = encode_call(
            SIG_SWAP,
            ["((address,bytes,address,bytes)[],address,uint256)[]", "uint256", "uint256"],
            [paths, int(params.min_amount_out), int(params.deadline)],
        )
        return TxRequest(to=str(self.router_address), data=data, value=int(params.amount_in) if native_in else 0)
