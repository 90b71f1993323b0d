from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dexroute import config  # noqa: E402
from dexroute.chain_config import load_all_chain_configs, load_chain_config  # noqa: E402
from dexroute.dex.registry import build_default_registry  # noqa: E402
from dexroute.errors import ConfigurationError  # noqa: E402
from dexroute.logs import configure_logging  # noqa: E402
from dexroute.service import SwapQuoteService  # noqa: E402
from infra.metrics import METRICS  # noqa: E402
from infra.rpc import client_for_chain  # noqa: E402


def _resolve_chain(value: str):
    text = str(value).strip()
    if text.isdigit():
        chain = load_chain_config(chain_id=int(text))
    else:
        chain = load_chain_config(chain_name=text)
    if chain is None:
        raise ConfigurationError(f"no chain config for {text!r}")
    return chain


def _split(raw: Optional[str]) -> List[str]:
    return [p.strip() for p in str(raw or "").split(",") if p.strip()]


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    chain = _resolve_chain(args.chain)
    registry = build_default_registry(_split(args.dexes))
    chains = load_all_chain_configs()
    chains[chain.chain_id] = chain
    service = SwapQuoteService(registry, chains, client_for_chain, price_impact=not args.no_price_impact)
    payload: Dict[str, Any] = {
        "chainId": chain.chain_id,
        "tokenIn": args.token_in,
        "tokenOut": args.token_out,
        "amountIn": args.amount,
        "amountInRaw": bool(args.raw),
        "slippageBps": args.slippage_bps,
        "debugRoutes": bool(args.debug),
    }
    if args.user:
        payload["userAddress"] = args.user
    if args.deadline:
        payload["deadline"] = args.deadline
    try:
        return await service.handle(payload)
    finally:
        await service.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Quote a swap across every DEX deployed on a chain")
    parser.add_argument("--chain", required=True, help="chain key (ethereum, bsc, linea, monad, sepolia) or chain id")
    parser.add_argument("--token-in", required=True, help="token address or symbol")
    parser.add_argument("--token-out", required=True, help="token address or symbol")
    parser.add_argument("--amount", required=True, help="amount in (human units unless --raw)")
    parser.add_argument("--raw", action="store_true", help="amount is in raw integer units")
    parser.add_argument("--slippage-bps", type=int, default=config.DEFAULT_SLIPPAGE_BPS, help="slippage tolerance")
    parser.add_argument("--user", default="", help="user address; builds approvals and swap calldata")
    parser.add_argument("--deadline", type=int, default=0, help="unix deadline (default now + 20 min)")
    parser.add_argument("--dexes", default="", help="comma separated dex ids to enable")
    parser.add_argument("--debug", action="store_true", help="include per-plugin outcomes")
    parser.add_argument("--no-price-impact", action="store_true", help="skip the price impact probe")
    parser.add_argument("--log-level", default="INFO", help="log level")
    parser.add_argument("--log-file", default="", help="also log to this file")
    parser.add_argument("--metrics", action="store_true", help="print the metrics snapshot")
    args = parser.parse_args()

    logger = configure_logging(args.log_level, Path(args.log_file) if args.log_file else None)
    try:
        result = asyncio.run(_run(args))
    except ConfigurationError as exc:
        logger.error("configuration error: %s", exc)
        return 2

    print(json.dumps(result, indent=2))
    if args.metrics:
        print(json.dumps(METRICS.snapshot(), indent=2))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
