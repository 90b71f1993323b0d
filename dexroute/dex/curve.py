from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from dexroute.chain_config import ChainConfig
from dexroute.dex.base import DexPlugin
from dexroute.dex.encoding import decode_words, encode_call
from dexroute.dex.types import KIND_STABLE, DexQuoteParams, QuoteCall, RouteCandidate, SwapParams, TxRequest
from dexroute.errors import ExecutionEncodingError
from dexroute.normalize import is_native, same_address

SIG_GET_DY = "get_dy(int128,int128,uint256)"
SIG_EXCHANGE = "exchange(int128,int128,uint256,uint256)"


@dataclass(frozen=True)
class CurvePool:
    address: str
    coins: Tuple[str, ...]
    label: str = ""

    def index_of(self, token: str) -> Optional[int]:
        for i, coin in enumerate(self.coins):
            if same_address(coin, token):
                return i
        return None


class StableSwapPlugin(DexPlugin):
    """Curve style stable pools from a fixed pool list.

    Pools hold ERC-20 coins only and `exchange` pays msg.sender, so native
    legs are not quoted.
    """

    def __init__(self, *, dex_id: str, name: str, chain_ids: Iterable[int], pools: Sequence[CurvePool]):
        super().__init__(dex_id=dex_id, name=name, kind=KIND_STABLE, chain_ids=chain_ids)
        self.pools = tuple(pools)

    def build_quote_calls(self, params: DexQuoteParams) -> List[QuoteCall]:
        if is_native(params.token_in.address) or is_native(params.token_out.address):
            return []
        pair = self._pair(params)
        if pair is None:
            return []
        token_in, token_out = pair
        calls: List[QuoteCall] = []
        for pool in self.pools:
            i = pool.index_of(token_in)
            j = pool.index_of(token_out)
            if i is None or j is None:
                continue
            data = encode_call(SIG_GET_DY, ["int128", "int128", "uint256"], [i, j, int(params.amount_in)])
            calls.append(QuoteCall(to=pool.address, data=data, decode=self._decoder(params, pool, i, j, token_in, token_out)))
        return calls

    def _decoder(self, params: DexQuoteParams, pool: CurvePool, i: int, j: int, token_in: str, token_out: str):
        def _decode(raw: bytes) -> Optional[RouteCandidate]:
            (dy,) = decode_words(["uint256"], raw)
            detail = f"{pool.label or 'Pool'} {i}->{j}"
            hop = self._hop(detail, pool.address, [token_in, token_out], pool=pool.address, i=i, j=j)
            return self._candidate(params.chain, params.amount_in, int(dy), [hop])

        return _decode

    def _pool_indices(self, params: SwapParams) -> Tuple[str, int, int]:
        if len(params.hops) != 1:
            raise ExecutionEncodingError(f"{self.id} executes single-pool routes only")
        hop = params.hops[0]
        hp = hop.params or {}
        pool_addr = hp.get("pool") or hop.pool_or_quoter
        if "i" in hp and "j" in hp:
            return str(pool_addr), int(hp["i"]), int(hp["j"])
        for pool in self.pools:
            if same_address(pool.address, pool_addr):
                i = pool.index_of(hop.token_in)
                j = pool.index_of(hop.token_out)
                if i is not None and j is not None:
                    return pool.address, i, j
        raise ExecutionEncodingError(f"cannot resolve coin indices for pool {pool_addr}")

    def approval_spender(self, params: SwapParams) -> Optional[str]:
        pool, _i, _j = self._pool_indices(params)
        return pool

    def build_swap_calldata(self, chain: ChainConfig, params: SwapParams) -> TxRequest:
        native_in, native_out, _token_in, _token_out = self._native_flags(chain, params)
        if native_in or native_out:
            raise ExecutionEncodingError(f"{self.name} pools do not take the native coin")
        pool, i, j = self._pool_indices(params)
        data = encode_call(
            SIG_EXCHANGE,
            ["int128", "int128", "uint256", "uint256"],
            [i, j, int(params.amount_in), int(params.min_amount_out)],
        )
        return TxRequest(to=pool, data=data, value=0)
