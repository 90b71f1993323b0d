from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from dexroute import erc20
from dexroute.chain_config import ChainConfig
from dexroute.dex.types import DexQuoteParams, QuoteCall, RouteCandidate, RouteHop, SwapParams, TxRequest
from dexroute.errors import ConfigurationError, ExecutionEncodingError
from dexroute.normalize import is_native, normalize, same_address
from infra.multicall import Call, multicall

log = logging.getLogger(__name__)


def pick_best(candidates: Iterable[Optional[RouteCandidate]]) -> Optional[RouteCandidate]:
    """Highest amount_out wins; on a tie the earliest candidate is kept."""
    best: Optional[RouteCandidate] = None
    for cand in candidates:
        if cand is None or cand.amount_out <= 0:
            continue
        if best is None or cand.amount_out > best.amount_out:
            best = cand
    return best


# hop params that name a pool; quote-time state such as reserves is left out
POOL_PARAMS = ("pool", "pair", "pool_id", "tick_spacing", "hooks", "i", "j")


def pool_identity(hop: RouteHop) -> Tuple[object, ...]:
    """Hashable key of the pool a hop trades through."""
    hp = hop.params or {}
    extra = tuple(str(hp[k]).lower() if k in hp else None for k in POOL_PARAMS)
    return (str(hop.pool_or_quoter).lower(), hop.fee_tier) + extra


class DexPlugin:
    """One liquidity-source protocol family deployed on a set of chains.

    Instances are configured once at registry build time and never mutated,
    so one instance is shared by every concurrent request.

    Quote contract: `quote_single_hop` returns None for missing pools,
    reverts and non-positive outputs. The default implementation runs the
    calls from `build_quote_calls` through one multicall and keeps the
    best decoded slot.
    """

    supports_multi_hop: bool = False
    fee_tiers: Tuple[int, ...] = ()

    def __init__(
        self,
        *,
        dex_id: str,
        name: str,
        kind: str,
        chain_ids: Iterable[int],
        router_address: Optional[str] = None,
    ):
        self.id = str(dex_id)
        self.name = str(name)
        self.kind = str(kind)
        self.supported_chains: Tuple[int, ...] = tuple(int(c) for c in chain_ids)
        self.router_address = router_address

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, chains={list(self.supported_chains)})"

    def supports(self, chain_id: int) -> bool:
        return int(chain_id) in self.supported_chains

    def _check_chain(self, chain_id: int) -> None:
        if not self.supports(chain_id):
            raise ConfigurationError(f"{self.id} does not support chain {chain_id}")

    def _pair(self, params: DexQuoteParams) -> Optional[Tuple[str, str]]:
        self._check_chain(params.chain.chain_id)
        token_in = normalize(params.chain, params.token_in.address)
        token_out = normalize(params.chain, params.token_out.address)
        if same_address(token_in, token_out) or int(params.amount_in) <= 0:
            return None
        return token_in, token_out

    def _hop(
        self,
        detail: str,
        pool_or_quoter: str,
        path: Sequence[str],
        *,
        fee_tier: Optional[int] = None,
        **params: object,
    ) -> RouteHop:
        return RouteHop(
            dex_id=self.id,
            dex_name=self.name,
            kind=self.kind,
            detail=detail,
            pool_or_quoter=pool_or_quoter,
            path=tuple(path),
            fee_tier=fee_tier,
            params=dict(params),
        )

    def _candidate(
        self,
        chain: ChainConfig,
        amount_in: int,
        amount_out: int,
        hops: Sequence[RouteHop],
        gas_estimate: Optional[int] = None,
    ) -> Optional[RouteCandidate]:
        if int(amount_out) <= 0:
            return None
        return RouteCandidate(
            chain_id=chain.chain_id,
            dex_id=self.id,
            dex_name=self.name,
            amount_in=int(amount_in),
            amount_out=int(amount_out),
            hops=tuple(hops),
            gas_estimate=gas_estimate,
        )

    def build_quote_calls(self, params: DexQuoteParams) -> List[QuoteCall]:
        return []

    async def _run_quote_calls(self, params: DexQuoteParams, calls: List[QuoteCall]) -> List[Optional[RouteCandidate]]:
        results = await multicall(params.client, [Call(c.to, c.data, c.value) for c in calls])
        decoded: List[Optional[RouteCandidate]] = []
        for call, res in zip(calls, results):
            if not res.ok:
                decoded.append(None)
                continue
            try:
                decoded.append(call.decode(res.return_data))
            except Exception as exc:
                log.debug("%s: decode failed for %s: %s", self.id, call.to, exc)
                decoded.append(None)
        return decoded

    async def quote_single_hop(self, params: DexQuoteParams) -> Optional[RouteCandidate]:
        calls = self.build_quote_calls(params)
        if not calls:
            return None
        return pick_best(await self._run_quote_calls(params, calls))

    async def quote_hop(self, params: DexQuoteParams, hop: RouteHop) -> Optional[RouteCandidate]:
        """Re-quote `params` through the pool `hop` was quoted on.

        Sibling pools of the same pair (other fee tiers, other tick
        spacings) are ignored even when they would pay more.
        """
        calls = self.build_quote_calls(params)
        if calls:
            decoded = await self._run_quote_calls(params, calls)
        else:
            decoded = [await self.quote_single_hop(params)]
        want = pool_identity(hop)
        return pick_best(c for c in decoded if c is not None and c.hops and pool_identity(c.hops[0]) == want)

    def build_swap_calldata(self, chain: ChainConfig, params: SwapParams) -> TxRequest:
        raise ExecutionEncodingError(f"execution not supported for {self.name}")

    def approval_spender(self, params: SwapParams) -> Optional[str]:
        return self.router_address

    async def build_approvals(
        self,
        chain: ChainConfig,
        params: SwapParams,
        *,
        owner: str,
        client: object,
        token_symbol: str = "",
    ) -> List[TxRequest]:
        """ERC-20 approvals that must land before the swap, in order."""
        if is_native(params.token_in):
            return []
        spender = self.approval_spender(params)
        if not spender:
            return []
        current = await erc20.allowance(client, token=params.token_in, owner=owner, spender=spender)
        if current >= int(params.amount_in):
            return []
        label = token_symbol or params.token_in
        return [
            TxRequest(
                to=params.token_in,
                data=erc20.approve_calldata(spender, params.amount_in),
                value=0,
                description=f"Approve {label} for {self.name}",
            )
        ]

    def _native_flags(self, chain: ChainConfig, params: SwapParams) -> Tuple[bool, bool, str, str]:
        """(native_in, native_out, wrapped token_in, wrapped token_out) for an execution request."""
        self._check_chain(params.chain_id)
        if params.chain_id != chain.chain_id:
            raise ConfigurationError(f"swap for chain {params.chain_id} built with config of {chain.chain_id}")
        native_in = is_native(params.token_in)
        native_out = is_native(params.token_out)
        token_in = normalize(chain, params.token_in)
        token_out = normalize(chain, params.token_out)
        if not params.hops:
            raise ExecutionEncodingError("route has no hops")
        if not same_address(params.hops[0].token_in, token_in):
            raise ExecutionEncodingError("first hop does not start at token_in")
        if not same_address(params.hops[-1].token_out, token_out):
            raise ExecutionEncodingError("last hop does not end at token_out")
        return native_in, native_out, token_in, token_out
