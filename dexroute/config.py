# dexroute/config.py
# Process-wide defaults. Every value can be overridden through the
# environment; chain specific data lives in configs/chains/*.json.

from __future__ import annotations

import os
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return bool(default)
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    return str(raw).strip()


# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = _env_float("RPC_TIMEOUT_MIN_S", 1.0)
RPC_TIMEOUT_MAX_S = _env_float("RPC_TIMEOUT_MAX_S", 6.0)
RPC_DEFAULT_TIMEOUT_S = _env_float("RPC_DEFAULT_TIMEOUT_S", 3.0)

# Retries for transient failures (timeouts, 429, 5xx).
RPC_RETRY_COUNT = _env_int("RPC_RETRY_COUNT", 1)
RPC_BACKOFF_BASE_S = _env_float("RPC_BACKOFF_BASE_S", 0.25)
RPC_RATE_LIMIT_BACKOFF_S = _env_float("RPC_RATE_LIMIT_BACKOFF_S", 0.35)

# Max sockets per RPC client.
RPC_CONNECTION_LIMIT = _env_int("RPC_CONNECTION_LIMIT", 50)

# One unresponsive plugin must not stall the whole aggregation.
PLUGIN_QUOTE_TIMEOUT_S = _env_float("PLUGIN_QUOTE_TIMEOUT_S", 4.0)

# A -> hub -> B candidates through the chain's intermediate tokens.
MULTI_HOP_ENABLED = _env_bool("MULTI_HOP_ENABLED", True)

# Price impact probe size: amount_in // divisor (at least one unit).
PRICE_IMPACT_PROBE_DIVISOR = _env_int("PRICE_IMPACT_PROBE_DIVISOR", 1000)

# Execution defaults
DEFAULT_SLIPPAGE_BPS = _env_int("DEFAULT_SLIPPAGE_BPS", 50)  # 0.50%
DEFAULT_DEADLINE_S = _env_int("DEFAULT_DEADLINE_S", 1200)

# Multicall3 is deployed at the same address on every supported chain.
MULTICALL3_ADDRESS = _env_str("MULTICALL3_ADDRESS", "0xcA11bde05977b3631167028862bE2a173976CA11")
MULTICALL_CHUNK_SIZE = _env_int("MULTICALL_CHUNK_SIZE", 64)

# The all-zero address stands for the chain's native coin.
NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"

# Directory holding <name>.json chain files. None -> <repo>/configs/chains
CHAIN_CONFIG_DIR = _env_str("CHAIN_CONFIG_DIR", None)

# Canonical Permit2 deployment (same address on all chains).
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"
