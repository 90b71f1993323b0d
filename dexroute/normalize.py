from __future__ import annotations

from typing import Any

from dexroute import config
from dexroute.errors import ConfigurationError


def is_native(address: Any) -> bool:
    return str(address or "").strip().lower() == config.NATIVE_TOKEN_ADDRESS


def same_address(a: Any, b: Any) -> bool:
    return str(a or "").strip().lower() == str(b or "").strip().lower()


def normalize(chain: Any, address: str) -> str:
    """Map the native-coin sentinel to the chain's wrapped native token.

    Any other address is returned unchanged. Pure and idempotent: the
    wrapped token is a real ERC-20 so normalizing it again is a no-op.
    Raises ConfigurationError when the chain has no wrapped native token.
    """
    addr = str(address).strip()
    if not is_native(addr):
        return addr
    wrapped = getattr(chain, "wrapped_native", None)
    if not wrapped or is_native(wrapped):
        raise ConfigurationError(
            f"chain {getattr(chain, 'chain_id', chain)} has no wrapped native token configured"
        )
    return str(wrapped)
