from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from dexroute.chain_config import ChainConfig, TokenInfo

# Protocol family tags carried on every hop.
KIND_UNIV2 = "UNIV2_LIKE"
KIND_UNIV3 = "UNIV3_LIKE"
KIND_ALGEBRA = "ALGEBRA"
KIND_UNIV4 = "UNIV4_SINGLETON"
KIND_STABLE = "CURVE_STABLE"
KIND_SYNC_CLASSIC = "SYNC_CLASSIC"
KIND_SYNC_STABLE = "SYNC_STABLE"


@dataclass(frozen=True)
class RouteHop:
    """One swap leg through a single pool.

    `fee_tier` is the tier picked at quote time in hundredths of a bip
    (500 == 0.05%); `detail` keeps the same tier as a parseable string.
    `params` holds family specific data the execution step needs
    (tick spacing, hooks, pool address, coin indices).
    """

    dex_id: str
    dex_name: str
    kind: str
    detail: str
    pool_or_quoter: str
    path: Tuple[str, ...]
    fee_tier: Optional[int] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def token_in(self) -> str:
        return self.path[0]

    @property
    def token_out(self) -> str:
        return self.path[-1]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "dexId": self.dex_id,
            "dexName": self.dex_name,
            "kind": self.kind,
            "detail": self.detail,
            "poolOrQuoter": self.pool_or_quoter,
            "path": list(self.path),
        }
        if self.fee_tier is not None:
            out["feeTier"] = self.fee_tier
        if self.params:
            out["params"] = dict(self.params)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RouteHop":
        """Inverse of `to_dict`; raises ValueError on a malformed hop."""
        if not isinstance(data, Mapping):
            raise ValueError("route hop must be an object")
        path = data.get("path")
        if not isinstance(path, (list, tuple)) or len(path) < 2:
            raise ValueError("route hop path needs at least two tokens")
        if not data.get("dexId"):
            raise ValueError("route hop has no dexId")
        params = data.get("params") or {}
        if not isinstance(params, Mapping):
            raise ValueError("route hop params must be an object")
        fee = data.get("feeTier")
        return cls(
            dex_id=str(data["dexId"]),
            dex_name=str(data.get("dexName") or data["dexId"]),
            kind=str(data.get("kind") or ""),
            detail=str(data.get("detail") or ""),
            pool_or_quoter=str(data.get("poolOrQuoter") or ""),
            path=tuple(str(t) for t in path),
            fee_tier=None if fee is None or fee == "" else int(fee),
            params=dict(params),
        )


@dataclass(frozen=True)
class RouteCandidate:
    chain_id: int
    dex_id: str
    dex_name: str
    amount_in: int
    amount_out: int
    hops: Tuple[RouteHop, ...]
    gas_estimate: Optional[int] = None

    @property
    def is_direct(self) -> bool:
        return len(self.hops) == 1

    @property
    def token_path(self) -> List[str]:
        out: List[str] = []
        for hop in self.hops:
            for token in hop.path:
                if out and out[-1].lower() == token.lower():
                    continue
                out.append(token)
        return out

    def has_path_continuity(self) -> bool:
        for prev, nxt in zip(self.hops, self.hops[1:]):
            if prev.token_out.lower() != nxt.token_in.lower():
                return False
        return bool(self.hops)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "dexId": self.dex_id,
            "dexName": self.dex_name,
            "amountIn": str(self.amount_in),
            "amountOut": str(self.amount_out),
            "hops": [h.to_dict() for h in self.hops],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RouteCandidate":
        """Inverse of `to_dict`. Accepts the quote response's route
        summaries too; their extra display fields are ignored."""
        if not isinstance(data, Mapping):
            raise ValueError("route must be an object")
        hops = data.get("hops")
        if not isinstance(hops, (list, tuple)) or not hops:
            raise ValueError("route has no hops")
        try:
            chain_id = int(data["chainId"])
            amount_in = int(str(data["amountIn"]))
            amount_out = int(str(data["amountOut"]))
        except KeyError as exc:
            raise ValueError(f"route is missing {exc.args[0]}") from None
        except TypeError as exc:
            raise ValueError(f"malformed route: {exc}") from None
        if not data.get("dexId"):
            raise ValueError("route has no dexId")
        if amount_in <= 0 or amount_out < 0:
            raise ValueError("route amounts out of range")
        gas = data.get("gasEstimate")
        return cls(
            chain_id=chain_id,
            dex_id=str(data["dexId"]),
            dex_name=str(data.get("dexName") or data["dexId"]),
            amount_in=amount_in,
            amount_out=amount_out,
            hops=tuple(RouteHop.from_dict(h) for h in hops),
            gas_estimate=None if gas is None or gas == "" else int(str(gas)),
        )


@dataclass(frozen=True)
class DexQuoteParams:
    chain: ChainConfig
    token_in: TokenInfo
    token_out: TokenInfo
    amount_in: int
    client: Any


@dataclass(frozen=True)
class QuoteCall:
    """A batched read emitted by a plugin; `decode` maps the raw return bytes to a candidate."""

    to: str
    data: str
    decode: Callable[[bytes], Optional[RouteCandidate]]
    value: int = 0


@dataclass(frozen=True)
class SwapParams:
    chain_id: int
    token_in: str
    token_out: str
    amount_in: int
    min_amount_out: int
    recipient: str
    deadline: int
    hops: Tuple[RouteHop, ...]


@dataclass(frozen=True)
class TxRequest:
    to: str
    data: str
    value: int = 0
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"to": self.to, "data": self.data, "value": str(self.value)}
        if self.description:
            out["description"] = self.description
        return out
