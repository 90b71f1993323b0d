from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from eth_abi import decode, encode
from eth_utils import keccak

from dexroute import config
from dexroute.chain_config import ChainConfig, TokenInfo
from dexroute.dex.base import DexPlugin
from dexroute.dex.types import TxRequest
from dexroute.errors import ExecutionEncodingError
from infra.rpc import RPCError

WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
USDC = "0xA0b86991c6218b36c1D19D4a2e9Eb0cE3606eB48"
DAI = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
NATIVE = config.NATIVE_TOKEN_ADDRESS

Handler = Union[bytes, str, Callable[[bytes], Any]]


def addr(ch: str) -> str:
    return "0x" + ch * 40


def sel(signature: str) -> str:
    return keccak(text=signature)[:4].hex()


def words(*values: int) -> bytes:
    return encode(["uint256"] * len(values), [int(v) for v in values])


def calldata_args(data: str, types: List[str]) -> Tuple[str, Tuple[Any, ...]]:
    """(selector hex, decoded args) of a 0x-prefixed calldata string."""
    raw = bytes.fromhex(data[2:])
    return raw[:4].hex(), decode(types, raw[4:])


def make_chain(
    *,
    chain_id: int = 1,
    wrapped_native: Optional[str] = WETH,
    intermediates: Tuple[str, ...] = (WETH, DAI),
) -> ChainConfig:
    tokens = (
        TokenInfo(address=NATIVE, symbol="ETH", decimals=18, chain_id=chain_id, name="Ether"),
        TokenInfo(address=WETH, symbol="WETH", decimals=18, chain_id=chain_id, name="Wrapped Ether"),
        TokenInfo(address=USDC, symbol="USDC", decimals=6, chain_id=chain_id, name="USD Coin"),
        TokenInfo(address=DAI, symbol="DAI", decimals=18, chain_id=chain_id, name="Dai Stablecoin"),
    )
    return ChainConfig(
        chain_id=chain_id,
        key="testnet",
        name="Test Chain",
        rpc_urls=[],
        native_symbol="ETH",
        native_decimals=18,
        wrapped_native=wrapped_native,
        tokens=tokens,
        intermediates=intermediates,
    )


class FakeChainClient:
    """In-memory chain: eth_call answered from handlers keyed by (to, selector).

    A handler receives the abi-encoded arguments (calldata minus selector)
    and returns the raw return bytes; raising, or having no handler, is a
    revert. Multicall3 aggregate3 is decoded and every sub-call dispatched
    on its own, so a reverting slot never affects the others.
    """

    def __init__(self, multicall_address: Optional[str] = None) -> None:
        self.multicall_address = str(multicall_address or config.MULTICALL3_ADDRESS).lower()
        self.multicall_enabled = True
        self.handlers: Dict[Tuple[str, str], Handler] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[Tuple[str, str]] = []
        self.dispatched: List[Tuple[str, str]] = []

    def on(self, to: str, signature: str, handler: Handler) -> "FakeChainClient":
        self.handlers[(str(to).lower(), sel(signature))] = handler
        return self

    def count(self, to: str, signature: Optional[str] = None) -> int:
        key = str(to).lower()
        s = sel(signature) if signature else None
        return sum(1 for t, k in self.dispatched if t == key and (s is None or k == s))

    def multicall_round_trips(self) -> int:
        return sum(1 for t, _ in self.calls if t == self.multicall_address)

    async def eth_call(
        self,
        to: str,
        data: str,
        block: str = "latest",
        *,
        timeout_s: Optional[float] = None,
        allow_revert_data: bool = False,
    ) -> str:
        key = str(to).lower()
        self.calls.append((key, str(data)[2:10]))
        delay = self.delays.get(key)
        if delay:
            await asyncio.sleep(delay)
        if key == self.multicall_address:
            if not self.multicall_enabled:
                raise RPCError("execution reverted: no multicall", reason="revert")
            return self._aggregate3(data)
        return "0x" + self._dispatch(key, data).hex()

    def _dispatch(self, to: str, data: str) -> bytes:
        raw = bytes.fromhex(str(data)[2:])
        key = (str(to).lower(), raw[:4].hex())
        self.dispatched.append(key)
        handler = self.handlers.get(key)
        if handler is None:
            raise RPCError("execution reverted", reason="revert")
        out = handler(raw[4:]) if callable(handler) else handler
        if isinstance(out, str):
            return bytes.fromhex(out[2:] if out.startswith("0x") else out)
        return bytes(out)

    def _aggregate3(self, data: str) -> str:
        raw = bytes.fromhex(str(data)[2:])
        (entries,) = decode(["(address,bool,bytes)[]"], raw[4:])
        results = []
        for target, _allow_failure, call_data in entries:
            try:
                results.append((True, self._dispatch(target, "0x" + bytes(call_data).hex())))
            except Exception:
                results.append((False, b""))
        return "0x" + encode(["(bool,bytes)[]"], [results]).hex()


class DummyPlugin(DexPlugin):
    """Quotes from a {(token_in, token_out): multiplier_bps or callable} table.

    A callable entry maps amount_in to amount_out, for curves with impact.
    """

    def __init__(
        self,
        dex_id,
        quotes=None,
        *,
        chain_ids=(1,),
        exc=None,
        delay=0.0,
        multi_hop=False,
        router=None,
        build_error=None,
    ):
        super().__init__(dex_id=dex_id, name=dex_id.title(), kind="TEST", chain_ids=chain_ids, router_address=router)
        self.quotes = {(a.lower(), b.lower()): m for (a, b), m in (quotes or {}).items()}
        self.exc = exc
        self.delay = delay
        self.supports_multi_hop = multi_hop
        self.build_error = build_error
        self.calls = []
        self.built = []

    async def quote_single_hop(self, params):
        pair = self._pair(params)
        if pair is None:
            return None
        token_in, token_out = pair
        self.calls.append((token_in.lower(), token_out.lower(), params.amount_in))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        rate = self.quotes.get((token_in.lower(), token_out.lower()))
        if rate is None:
            return None
        out = rate(params.amount_in) if callable(rate) else params.amount_in * rate // 10_000
        hop = self._hop("test", addr("1"), [token_in, token_out])
        return self._candidate(params.chain, params.amount_in, out, [hop], gas_estimate=100_000)

    def build_swap_calldata(self, chain, params):
        self._native_flags(chain, params)
        if self.build_error is not None:
            raise ExecutionEncodingError(self.build_error)
        self.built.append(params)
        data = "0x" + sel("swap(uint256,uint256)") + encode(["uint256", "uint256"], [params.amount_in, params.min_amount_out]).hex()
        return TxRequest(to=self.router_address or addr("e"), data=data, value=0)
