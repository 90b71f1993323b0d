from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dexroute import config
from dexroute.chain_config import ChainConfig, TokenInfo
from dexroute.dex.registry import PluginRegistry
from dexroute.dex.types import RouteCandidate, SwapParams, TxRequest
from dexroute.errors import ConfigurationError
from infra.metrics import METRICS

log = logging.getLogger(__name__)

BPS = 10_000


def apply_slippage(amount_out: int, slippage_bps: int) -> int:
    """floor(amount_out * (10000 - bps) / 10000)."""
    bps = int(slippage_bps)
    if bps < 0 or bps > BPS:
        raise ValueError(f"slippage_bps must be within 0..{BPS}, got {bps}")
    return int(amount_out) * (BPS - bps) // BPS


def default_deadline(now: Optional[float] = None) -> int:
    return int(now if now is not None else time.time()) + int(config.DEFAULT_DEADLINE_S)


@dataclass
class Execution:
    swap: TxRequest
    min_amount_out: int
    approvals: List[TxRequest] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approvals": [a.to_dict() for a in self.approvals],
            "swap": self.swap.to_dict(),
            "minAmountOut": str(self.min_amount_out),
        }


class SwapExecutionBuilder:
    """Re-expresses a chosen route as transactions for an external signer.

    The route is never re-selected or re-quoted here: the winning plugin
    encodes exactly the hops it returned at quote time. Configuration and
    encoding errors propagate to the caller.
    """

    def __init__(self, registry: PluginRegistry):
        self.registry = registry

    async def build(
        self,
        chain: ChainConfig,
        route: RouteCandidate,
        *,
        token_in: TokenInfo,
        token_out: TokenInfo,
        slippage_bps: int,
        recipient: str,
        deadline: Optional[int] = None,
        owner: Optional[str] = None,
        client: Any = None,
    ) -> Execution:
        if route.chain_id != chain.chain_id:
            raise ConfigurationError(f"route for chain {route.chain_id} built against chain {chain.chain_id}")
        if route.dex_id not in self.registry:
            raise ConfigurationError(f"route references unknown dex {route.dex_id!r}")
        plugin = self.registry.get(route.dex_id)

        min_out = apply_slippage(route.amount_out, slippage_bps)
        params = SwapParams(
            chain_id=chain.chain_id,
            token_in=token_in.address,
            token_out=token_out.address,
            amount_in=int(route.amount_in),
            min_amount_out=min_out,
            recipient=recipient,
            deadline=int(deadline) if deadline is not None else default_deadline(),
            hops=tuple(route.hops),
        )

        with METRICS.timer("execution_build_ms"):
            tx = plugin.build_swap_calldata(chain, params)
            approvals: List[TxRequest] = []
            if owner and client is not None:
                approvals = await plugin.build_approvals(
                    chain,
                    params,
                    owner=owner,
                    client=client,
                    token_symbol=token_in.symbol,
                )

        swap = TxRequest(
            to=tx.to,
            data=tx.data,
            value=tx.value,
            description=tx.description or self._describe(plugin.name, route, token_in, token_out),
        )
        METRICS.inc("execution_built_total")
        log.debug(
            "built %s swap to=%s value=%s min_out=%s approvals=%d",
            route.dex_id,
            swap.to,
            swap.value,
            min_out,
            len(approvals),
        )
        return Execution(swap=swap, min_amount_out=min_out, approvals=approvals)

    @staticmethod
    def _describe(dex_name: str, route: RouteCandidate, token_in: TokenInfo, token_out: TokenInfo) -> str:
        sym_in = token_in.symbol or token_in.address
        sym_out = token_out.symbol or token_out.address
        via = "" if route.is_direct else f" ({len(route.hops)} hops)"
        return f"Swap {sym_in} for {sym_out} on {dex_name}{via}"
