from __future__ import annotations

import os
from typing import Dict, Iterable, Iterator, List, Optional

from dexroute.dex.algebra import AlgebraPlugin
from dexroute.dex.base import DexPlugin
from dexroute.dex.curve import CurvePool, StableSwapPlugin
from dexroute.dex.syncswap import POOL_CLASSIC, POOL_STABLE, SyncSwapPlugin
from dexroute.dex.uniswap_v2 import UniV2PairPlugin, UniV2RouterPlugin
from dexroute.dex.uniswap_v3 import (
    PANCAKE_FEE_TIERS,
    ROUTER_02,
    ROUTER_V1,
    UNISWAP_FEE_TIERS,
    ConcentratedLiquidityPlugin,
)
from dexroute.dex.uniswap_v4 import SingletonPoolPlugin
from dexroute.errors import ConfigurationError

ETHEREUM = 1
BSC = 56
MONAD = 143
LINEA = 59144
SEPOLIA = 11155111

PANCAKE_V3_QUOTER = "0xB048Bbc1Ee6b733FFfCFb9e9CeF7375518e25997"


class PluginRegistry:
    """Ordered, immutable set of DEX plugins.

    Registration order is the final ranking tiebreak, so it is kept exactly
    as given.
    """

    def __init__(self, plugins: Iterable[DexPlugin]):
        items = tuple(plugins)
        index: Dict[str, int] = {}
        for i, plugin in enumerate(items):
            if plugin.id in index:
                raise ConfigurationError(f"duplicate plugin id {plugin.id!r}")
            index[plugin.id] = i
        self._plugins = items
        self._index = index

    def __iter__(self) -> Iterator[DexPlugin]:
        return iter(self._plugins)

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, dex_id: object) -> bool:
        return dex_id in self._index

    def get(self, dex_id: str) -> DexPlugin:
        try:
            return self._plugins[self._index[str(dex_id)]]
        except KeyError:
            raise ConfigurationError(f"no plugin registered for dex id {dex_id!r}") from None

    def index_of(self, dex_id: str) -> int:
        return self._index.get(str(dex_id), len(self._plugins))

    def for_chain(self, chain_id: int) -> List[DexPlugin]:
        return [p for p in self._plugins if p.supports(chain_id)]

    def chain_ids(self) -> List[int]:
        seen: List[int] = []
        for plugin in self._plugins:
            for cid in plugin.supported_chains:
                if cid not in seen:
                    seen.append(cid)
        return seen


def _linea() -> List[DexPlugin]:
    router = "0xc2a1947d2336b2af74d5813dc9ca6e0c3b3e8a1e"
    return [
        SyncSwapPlugin(
            dex_id="syncswap-classic",
            name="SyncSwap (Classic)",
            chain_ids=[LINEA],
            router=router,
            factory="0x37BAc764494c8db4e54BDE72f6965beA9fa0AC2d",
            pool_type=POOL_CLASSIC,
        ),
        SyncSwapPlugin(
            dex_id="syncswap-stable",
            name="SyncSwap (Stable)",
            chain_ids=[LINEA],
            router=router,
            factory="0xE4CF807E351b56720B17A59094179e7Ed9dD3727",
            pool_type=POOL_STABLE,
        ),
        AlgebraPlugin(
            dex_id="lynex",
            name="Lynex",
            chain_ids=[LINEA],
            quoter="0xcE829655b864E56fc34B783874cf9590053A0640",
            router="0x610D2f07b7EdC67565160F587F37636194C34E74",
        ),
        ConcentratedLiquidityPlugin(
            dex_id="nile-exchange",
            name="Nile Exchange",
            chain_ids=[LINEA],
            quoter="0xAAAEA10b0e6FBe566FE27c3A023DC5D8cA6Bca3d",
            router="0xAAA45c8F5ef92a000a121d102F4e89278a711Faa",
            fee_tiers=PANCAKE_FEE_TIERS,
            router_style=ROUTER_V1,
        ),
        ConcentratedLiquidityPlugin(
            dex_id="pancake-v3-linea",
            name="PancakeSwap V3",
            chain_ids=[LINEA],
            quoter=PANCAKE_V3_QUOTER,
            router="0x678Aa4bF4E210cf2166753e054d5b7c31cc7fa86",
            fee_tiers=PANCAKE_FEE_TIERS,
            router_style=ROUTER_02,
        ),
    ]


def _bsc() -> List[DexPlugin]:
    return [
        UniV2PairPlugin(
            dex_id="pancake-v2",
            name="PancakeSwap V2",
            chain_ids=[BSC],
            factory="0xcA143Ce32Fe78f1f7019d7d551a6402fC5350c73",
            router="0x10ED43C718714eb63d5aA57B78B54704E256024E",
            fee_numerator=9975,
            fee_denominator=10000,
        ),
        ConcentratedLiquidityPlugin(
            dex_id="pancake-v3",
            name="PancakeSwap V3",
            chain_ids=[BSC],
            quoter=PANCAKE_V3_QUOTER,
            router="0x13f4EA83D0bd40E75C8222255bc855a974568Dd4",
            fee_tiers=PANCAKE_FEE_TIERS,
            router_style=ROUTER_02,
        ),
        UniV2RouterPlugin(
            dex_id="mdex-v2",
            name="MDEX V2",
            chain_ids=[BSC],
            router="0x7DAe51BD3E3376B8c7c4900E9107f12Be3AF1bA8",
            fee_numerator=997,
            fee_denominator=1000,
        ),
    ]


def _ethereum() -> List[DexPlugin]:
    return [
        ConcentratedLiquidityPlugin(
            dex_id="uniswap-v3",
            name="Uniswap V3",
            chain_ids=[ETHEREUM],
            quoter="0x61fFE014bA17989E743c5F6cB21bF9697530B21e",
            router="0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45",
            fee_tiers=UNISWAP_FEE_TIERS,
        ),
        UniV2PairPlugin(
            dex_id="uniswap-v2",
            name="Uniswap V2",
            chain_ids=[ETHEREUM],
            factory="0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f",
            router="0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D",
        ),
        UniV2PairPlugin(
            dex_id="sushiswap",
            name="SushiSwap",
            chain_ids=[ETHEREUM],
            factory="0xC0AEe478e3658e2610c5F7A4A2E1777Ce9e4f2Ac",
            router="0xd9e1cE17f2641f24aE83637ab66a2cca9C378B9F",
        ),
    ]


def _sepolia() -> List[DexPlugin]:
    return [
        ConcentratedLiquidityPlugin(
            dex_id="uniswap-v3-sepolia",
            name="Uniswap V3 (Sepolia)",
            chain_ids=[SEPOLIA],
            quoter="0xEd1f6473345F45b75F8179591dd5bA1888cf2FB3",
            router="0x3bFA4769FB09eefC5a80d6E87c3B9C650f7Ae48E",
            fee_tiers=UNISWAP_FEE_TIERS,
        ),
        UniV2PairPlugin(
            dex_id="uniswap-v2-sepolia",
            name="Uniswap V2 (Sepolia)",
            chain_ids=[SEPOLIA],
            factory="0xF62c03E08ada871A0bEb309762E260a7a6a880E6",
            router="0xeE567Fe1712Faf6149d80dA1E6934E354124CfE3",
        ),
    ]


def _monad() -> List[DexPlugin]:
    return [
        ConcentratedLiquidityPlugin(
            dex_id="pancake-v3-monad",
            name="PancakeSwap V3 (Monad)",
            chain_ids=[MONAD],
            quoter=PANCAKE_V3_QUOTER,
            router="0x21114915Ac6d5A2e156931e20B20b038dEd0Be7C",
            fee_tiers=PANCAKE_FEE_TIERS,
        ),
        ConcentratedLiquidityPlugin(
            dex_id="uniswap-v3-monad",
            name="Uniswap V3 (Monad)",
            chain_ids=[MONAD],
            quoter="0x661e93cca42afacb172121ef892830ca3b70f08d",
            router="0xfe31f71c1b106eac32f1a19239c9a9a72ddfb900",
            fee_tiers=UNISWAP_FEE_TIERS,
        ),
        # Deployment addresses and quoter layout still need checking against the live chain.
        SingletonPoolPlugin(
            dex_id="uniswap-v4-monad",
            name="Uniswap V4 (Monad)",
            chain_ids=[MONAD],
            quoter=os.getenv("MONAD_V4_QUOTER", "0xa222dd357a9076d1091ed6aa2e16c9742dd26891"),
            pool_manager=os.getenv("MONAD_V4_POOL_MANAGER", "0x188d586ddcf52439676ca21a244753fa19f9ea8e"),
            universal_router=os.getenv("MONAD_UNIVERSAL_ROUTER", "0x0d97dc33264bfc1c226207428a79b26757fb9dc3"),
        ),
        StableSwapPlugin(
            dex_id="curve-monad",
            name="Curve (Monad)",
            chain_ids=[MONAD],
            pools=[
                CurvePool(
                    address="0x94264627195d82B63b36E9B9735dD76f5f5C91ab",
                    coins=(
                        "0x00000000eFE302BEAA2b3e6e1b18d08D69a9012a",  # AUSD
                        "0x754704Bc059F8C67012fEd69BC8A327a5aafb603",  # USDC
                        "0xe7cd86e13AC4309349F30B3435a9d337750fC82D",  # USDT
                    ),
                    label="3pool",
                ),
            ],
        ),
    ]


def _clean_dexes(dexes: Optional[Iterable[str]]) -> List[str]:
    out: List[str] = []
    for d in dexes or []:
        name = str(d).strip().lower()
        if name:
            out.append(name)
    return out


def default_plugins() -> List[DexPlugin]:
    return [*_linea(), *_bsc(), *_ethereum(), *_sepolia(), *_monad()]


def build_default_registry(enabled_dexes: Optional[Iterable[str]] = None) -> PluginRegistry:
    """Registry with every shipped plugin, optionally limited to `enabled_dexes`
    (argument first, then env ENABLED_DEXES as a comma list)."""
    enabled = _clean_dexes(enabled_dexes)
    if not enabled:
        enabled = _clean_dexes((os.getenv("ENABLED_DEXES") or "").split(","))
    plugins = default_plugins()
    if enabled:
        unknown = set(enabled) - {p.id for p in plugins}
        if unknown:
            raise ConfigurationError(f"unknown dex ids: {sorted(unknown)}")
        plugins = [p for p in plugins if p.id in enabled]
    return PluginRegistry(plugins)
