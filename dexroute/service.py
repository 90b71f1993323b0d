from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

from web3 import Web3

from dexroute import config
from dexroute.aggregator import AggregationResult, RouteAggregator
from dexroute.chain_config import ChainConfig, TokenInfo
from dexroute.dex.registry import PluginRegistry
from dexroute.dex.types import RouteCandidate
from dexroute.errors import DexRouteError, QuoteRequestError
from dexroute.execution import SwapExecutionBuilder, apply_slippage
from dexroute.pricing import confidence_score, estimate_price_impact
from infra.metrics import METRICS

log = logging.getLogger(__name__)

NO_ROUTE_ERROR = "no route found"
EXECUTION_ERROR = "execution failed to build"


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _as_int(v: Any, name: str) -> int:
    if isinstance(v, bool):
        raise QuoteRequestError(f"{name} must be an integer")
    try:
        return int(str(v).strip())
    except (TypeError, ValueError):
        raise QuoteRequestError(f"{name} must be an integer, got {v!r}") from None


def _check_token_ref(v: Any, name: str) -> str:
    text = str(v or "").strip()
    if not text:
        raise QuoteRequestError(f"missing {name}")
    if text.lower().startswith("0x"):
        # token refs are matched case-insensitively against the chain config
        if not Web3.is_address(text.lower()):
            raise QuoteRequestError(f"{name} is not a valid address: {text}")
        return text
    if not text.replace(".", "").replace("-", "").isalnum():
        raise QuoteRequestError(f"{name} is neither an address nor a token symbol: {text}")
    return text


def _slippage(v: Any) -> int:
    bps = config.DEFAULT_SLIPPAGE_BPS if v is None else _as_int(v, "slippageBps")
    if bps < 0 or bps > 10_000:
        raise QuoteRequestError(f"slippageBps must be within 0..10000, got {bps}")
    return bps


def _optional_address(v: Any, name: str) -> Optional[str]:
    if not v:
        return None
    text = str(v).strip()
    if not Web3.is_address(text):
        raise QuoteRequestError(f"{name} is not a valid address: {text}")
    return text


def _deadline(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    deadline = _as_int(v, "deadline")
    if deadline <= 0:
        raise QuoteRequestError("deadline must be a positive unix timestamp")
    return deadline


def parse_amount(amount: str, decimals: int, *, raw: bool = True) -> int:
    """Raw integer units, or a human decimal string truncated to `decimals`."""
    text = str(amount or "").strip()
    if not text:
        raise QuoteRequestError("missing amountIn")
    if raw:
        if not text.isdigit():
            raise QuoteRequestError(f"invalid raw amountIn: {text}")
        value = int(text)
    else:
        try:
            dec = Decimal(text)
        except InvalidOperation:
            raise QuoteRequestError(f"invalid amountIn: {text}") from None
        if not dec.is_finite():
            raise QuoteRequestError(f"invalid amountIn: {text}")
        value = int((dec * (Decimal(10) ** int(decimals))).to_integral_value(rounding=ROUND_DOWN))
    if value <= 0:
        raise QuoteRequestError("amountIn must be > 0")
    return value


@dataclass(frozen=True)
class QuoteRequest:
    chain_id: int
    token_in: str
    token_out: str
    amount_in: str
    amount_in_raw: bool = True
    slippage_bps: int = config.DEFAULT_SLIPPAGE_BPS
    user_address: Optional[str] = None
    deadline: Optional[int] = None
    debug_routes: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuoteRequest":
        if not isinstance(data, Mapping):
            raise QuoteRequestError("quote request must be an object")
        missing = [k for k in ("chainId", "tokenIn", "tokenOut", "amountIn") if data.get(k) in (None, "")]
        if missing:
            raise QuoteRequestError(f"missing required parameters: {', '.join(missing)}")

        chain_id = _as_int(data["chainId"], "chainId")
        token_in = _check_token_ref(data["tokenIn"], "tokenIn")
        token_out = _check_token_ref(data["tokenOut"], "tokenOut")

        return cls(
            chain_id=chain_id,
            token_in=token_in,
            token_out=token_out,
            amount_in=str(data["amountIn"]).strip(),
            amount_in_raw=_as_bool(data.get("amountInRaw"), True),
            slippage_bps=_slippage(data.get("slippageBps")),
            user_address=_optional_address(data.get("userAddress"), "userAddress"),
            deadline=_deadline(data.get("deadline")),
            debug_routes=_as_bool(data.get("debugRoutes"), False),
        )


@dataclass(frozen=True)
class BuildRequest:
    """Execution request for a route returned by an earlier quote."""

    chain_id: int
    route: RouteCandidate
    token_in: str
    token_out: str
    recipient: str
    slippage_bps: int = config.DEFAULT_SLIPPAGE_BPS
    deadline: Optional[int] = None
    owner: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BuildRequest":
        if not isinstance(data, Mapping):
            raise QuoteRequestError("build request must be an object")
        quote = data.get("quote")
        if data.get("chainId") in (None, "") or not isinstance(quote, Mapping) or not quote.get("bestRoute"):
            raise QuoteRequestError("missing required parameters: chainId, quote (with bestRoute)")
        chain_id = _as_int(data["chainId"], "chainId")
        try:
            route = RouteCandidate.from_dict(quote["bestRoute"])
        except ValueError as exc:
            raise QuoteRequestError(f"invalid quote: {exc}") from None
        if route.chain_id != chain_id:
            raise QuoteRequestError(f"quote is for chainId {route.chain_id}, not {chain_id}")

        recipient = _optional_address(data.get("recipient"), "recipient")
        if recipient is None:
            raise QuoteRequestError("missing recipient")

        # the quote's request keeps native placeholders the hop paths have wrapped
        quoted = quote.get("request") if isinstance(quote.get("request"), Mapping) else {}
        path = route.token_path
        token_in = data.get("tokenIn") or quoted.get("tokenIn") or path[0]
        token_out = data.get("tokenOut") or quoted.get("tokenOut") or path[-1]

        return cls(
            chain_id=chain_id,
            route=route,
            token_in=_check_token_ref(token_in, "tokenIn"),
            token_out=_check_token_ref(token_out, "tokenOut"),
            recipient=recipient,
            slippage_bps=_slippage(data.get("slippageBps")),
            deadline=_deadline(data.get("deadline")),
            owner=_optional_address(data.get("userAddress"), "userAddress") or recipient,
        )


@dataclass
class SwapQuoteResponse:
    success: bool
    request: Dict[str, Any]
    best_route: Optional[Dict[str, Any]] = None
    alternatives: List[Dict[str, Any]] = field(default_factory=list)
    execution: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    debug: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "request": self.request,
            "bestRoute": self.best_route,
            "alternatives": self.alternatives,
        }
        if self.execution is not None:
            out["execution"] = self.execution
        if self.error:
            out["error"] = self.error
        if self.debug is not None:
            out["debug"] = self.debug
        return out


def route_summary(
    route: RouteCandidate,
    slippage_bps: int,
    *,
    price_impact_bps: Optional[int] = None,
    confidence: Optional[int] = None,
) -> Dict[str, Any]:
    out = route.to_dict()
    out["minAmountOut"] = str(apply_slippage(route.amount_out, slippage_bps))
    out["priceImpactBps"] = price_impact_bps
    out["confidenceScore"] = confidence
    if route.gas_estimate is not None:
        out["gasEstimate"] = str(route.gas_estimate)
    return out


class SwapQuoteService:
    """Quote entry point: request validation, aggregation, display metrics
    and (with a user address) execution building.

    Chain clients come from `client_factory` and are cached per chain until
    `close()`.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        chains: Mapping[int, ChainConfig],
        client_factory: Callable[[ChainConfig], Any],
        *,
        aggregator: Optional[RouteAggregator] = None,
        builder: Optional[SwapExecutionBuilder] = None,
        price_impact: bool = True,
    ):
        self.registry = registry
        self.chains = dict(chains)
        self.client_factory = client_factory
        self.aggregator = aggregator or RouteAggregator(registry)
        self.builder = builder or SwapExecutionBuilder(registry)
        self.price_impact = bool(price_impact)
        self._clients: Dict[int, Any] = {}

    def client(self, chain: ChainConfig) -> Any:
        cl = self._clients.get(chain.chain_id)
        if cl is None:
            cl = self.client_factory(chain)
            self._clients[chain.chain_id] = cl
        return cl

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for cl in clients:
            closer = getattr(cl, "close", None)
            if closer is not None:
                await closer()

    def _chain(self, chain_id: int) -> ChainConfig:
        chain = self.chains.get(int(chain_id))
        if chain is None:
            raise QuoteRequestError(f"unsupported chainId: {chain_id}")
        if not self.registry.for_chain(chain.chain_id):
            raise QuoteRequestError(f"no DEX plugins configured for chainId {chain_id}")
        return chain

    @staticmethod
    def _token(chain: ChainConfig, ref: str, name: str) -> TokenInfo:
        token = chain.find_token(ref)
        if token is None:
            raise QuoteRequestError(f"{name} not supported on chain {chain.chain_id}: {ref}")
        return token

    async def handle(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Dict in, dict out. Invalid requests become `{success: false, error}`."""
        try:
            request = QuoteRequest.from_dict(payload)
            response = await self.get_quote(request)
        except QuoteRequestError as exc:
            METRICS.inc_reason("quote_result", "bad_request")
            req = {k: payload.get(k) for k in ("chainId", "tokenIn", "tokenOut", "amountIn")} if isinstance(payload, Mapping) else {}
            return SwapQuoteResponse(success=False, request=req, error=str(exc)).to_dict()
        return response.to_dict()

    async def get_quote(self, request: QuoteRequest) -> SwapQuoteResponse:
        chain = self._chain(request.chain_id)
        token_in = self._token(chain, request.token_in, "tokenIn")
        token_out = self._token(chain, request.token_out, "tokenOut")
        amount_in = parse_amount(request.amount_in, token_in.decimals, raw=request.amount_in_raw)

        req_out = {
            "chainId": chain.chain_id,
            "tokenIn": token_in.address,
            "tokenOut": token_out.address,
            "amountIn": request.amount_in,
            "amountInRaw": str(amount_in),
        }
        client = self.client(chain)
        result: AggregationResult = await self.aggregator.aggregate(chain, token_in, token_out, amount_in, client)
        debug = result.debug_summary() if request.debug_routes else None

        if result.best is None:
            METRICS.inc_reason("quote_result", "no_route")
            return SwapQuoteResponse(success=False, request=req_out, error=NO_ROUTE_ERROR, debug=debug)

        best = result.best
        impact: Optional[int] = None
        if self.price_impact:
            impact = await estimate_price_impact(best, registry=self.registry, chain=chain, client=client)
        candidates = result.candidates
        best_out = route_summary(
            best,
            request.slippage_bps,
            price_impact_bps=impact,
            confidence=confidence_score(best, candidates, impact),
        )
        alternatives = [route_summary(c, request.slippage_bps) for c in result.alternatives]

        response = SwapQuoteResponse(
            success=True,
            request=req_out,
            best_route=best_out,
            alternatives=alternatives,
            debug=debug,
        )
        if request.user_address:
            deadline = request.deadline or int(time.time()) + int(config.DEFAULT_DEADLINE_S)
            try:
                execution = await self.builder.build(
                    chain,
                    best,
                    token_in=token_in,
                    token_out=token_out,
                    slippage_bps=request.slippage_bps,
                    recipient=request.user_address,
                    deadline=deadline,
                    owner=request.user_address,
                    client=client,
                )
            except (DexRouteError, ValueError) as exc:
                METRICS.inc_reason("quote_result", "execution_failed")
                log.error("execution build failed for %s on chain %s: %s", best.dex_id, chain.chain_id, exc)
                response.success = False
                response.error = f"{EXECUTION_ERROR}: {exc}"
                return response
            response.execution = execution.to_dict()

        METRICS.inc_reason("quote_result", "ok")
        return response

    async def build(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Execution for a quote returned earlier, without quoting again.

        The route's hops are encoded as received, so the fee tier picked at
        quote time is the one the swap uses.
        """
        try:
            request = BuildRequest.from_dict(payload)
            chain = self._chain(request.chain_id)
            token_in = self._token(chain, request.token_in, "tokenIn")
            token_out = self._token(chain, request.token_out, "tokenOut")
        except QuoteRequestError as exc:
            METRICS.inc_reason("build_result", "bad_request")
            return {"success": False, "error": str(exc)}

        route = request.route
        deadline = request.deadline or int(time.time()) + int(config.DEFAULT_DEADLINE_S)
        try:
            execution = await self.builder.build(
                chain,
                route,
                token_in=token_in,
                token_out=token_out,
                slippage_bps=request.slippage_bps,
                recipient=request.recipient,
                deadline=deadline,
                owner=request.owner,
                client=self.client(chain),
            )
        except (DexRouteError, ValueError) as exc:
            METRICS.inc_reason("build_result", "execution_failed")
            log.error("execution build failed for %s on chain %s: %s", route.dex_id, chain.chain_id, exc)
            return {"success": False, "error": f"{EXECUTION_ERROR}: {exc}"}

        METRICS.inc_reason("build_result", "ok")
        return {"success": True, "dexId": route.dex_id, "execution": execution.to_dict()}
