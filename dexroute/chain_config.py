from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dexroute import config

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int
    chain_id: int
    name: str = ""
    logo_uri: str = ""

    @property
    def is_native(self) -> bool:
        return self.address.lower() == config.NATIVE_TOKEN_ADDRESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "decimals": self.decimals,
            "logoURI": self.logo_uri,
            "chainId": self.chain_id,
        }


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    key: str
    name: str
    rpc_urls: List[str]
    native_symbol: str
    native_decimals: int
    wrapped_native: Optional[str]
    tokens: Tuple[TokenInfo, ...] = ()
    intermediates: Tuple[str, ...] = ()
    native_name: str = ""
    explorer_url: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def find_token(self, address_or_symbol: str) -> Optional[TokenInfo]:
        """Look a token up by address (case-insensitive) or by symbol."""
        needle = str(address_or_symbol or "").strip()
        if not needle:
            return None
        if needle.startswith("0x"):
            low = needle.lower()
            for t in self.tokens:
                if t.address.lower() == low:
                    return t
            return None
        up = needle.upper()
        for t in self.tokens:
            if t.symbol.upper() == up:
                return t
        return None

    def token_for(self, address: str) -> TokenInfo:
        """Known token info, or a bare stand-in for an unlisted address."""
        found = self.find_token(address)
        if found is not None:
            return found
        return TokenInfo(address=str(address), symbol="", decimals=18, chain_id=self.chain_id)


def config_dir() -> Path:
    if config.CHAIN_CONFIG_DIR:
        return Path(config.CHAIN_CONFIG_DIR)
    return Path(__file__).resolve().parents[1] / "configs" / "chains"


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        log.warning("chain config %s unreadable: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def _normalize_tokens(raw: Any, chain_id: int) -> Tuple[TokenInfo, ...]:
    out: List[TokenInfo] = []
    if not isinstance(raw, list):
        return tuple(out)
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        address = str(entry.get("address") or "").strip()
        symbol = str(entry.get("symbol") or "").strip()
        if not address or not symbol:
            continue
        try:
            decimals = int(entry.get("decimals", 18))
        except (TypeError, ValueError):
            continue
        out.append(
            TokenInfo(
                address=address,
                symbol=symbol,
                decimals=decimals,
                chain_id=chain_id,
                name=str(entry.get("name") or symbol),
                logo_uri=str(entry.get("logoURI") or ""),
            )
        )
    return tuple(out)


def _normalize_addresses(raw: Any) -> Tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(str(x).strip() for x in raw if str(x or "").strip())


def _rpc_urls(data: Dict[str, Any], chain_id: int) -> List[str]:
    env_urls = os.getenv(f"RPC_URL_{chain_id}")
    if env_urls:
        return [u.strip() for u in env_urls.replace("\n", ",").split(",") if u.strip()]
    return [str(x).strip() for x in (data.get("rpc_urls") or []) if str(x).strip()]


def _from_dict(data: Dict[str, Any], fallback_key: str) -> Optional[ChainConfig]:
    try:
        chain_id = int(data.get("chain_id"))
    except (TypeError, ValueError):
        log.warning("chain config %s has no valid chain_id", fallback_key)
        return None
    native = data.get("native_currency") or {}
    wrapped = str(data.get("wrapped_native") or "").strip() or None
    return ChainConfig(
        chain_id=chain_id,
        key=str(data.get("key") or fallback_key).strip().lower(),
        name=str(data.get("name") or fallback_key),
        rpc_urls=_rpc_urls(data, chain_id),
        native_symbol=str(native.get("symbol") or "ETH"),
        native_decimals=int(native.get("decimals", 18)),
        native_name=str(native.get("name") or ""),
        wrapped_native=wrapped,
        tokens=_normalize_tokens(data.get("tokens"), chain_id),
        intermediates=_normalize_addresses(data.get("intermediates")),
        explorer_url=str(data.get("explorer_url") or ""),
    )


def load_all_chain_configs(base_dir: Optional[Path] = None) -> Dict[int, ChainConfig]:
    base = Path(base_dir) if base_dir is not None else config_dir()
    out: Dict[int, ChainConfig] = {}
    if not base.is_dir():
        return out
    for path in sorted(base.glob("*.json")):
        data = _read_json(path)
        if not data:
            continue
        cfg = _from_dict(data, path.stem)
        if cfg is not None:
            out[cfg.chain_id] = cfg
    return out


def load_chain_config(
    chain_name: Optional[str] = None,
    chain_id: Optional[int] = None,
    *,
    base_dir: Optional[Path] = None,
) -> Optional[ChainConfig]:
    base = Path(base_dir) if base_dir is not None else config_dir()
    name = str(chain_name or "").strip().lower()
    if name:
        path = base / f"{name}.json"
        if path.exists():
            data = _read_json(path)
            if data:
                return _from_dict(data, name)
    if chain_id is not None:
        return load_all_chain_configs(base).get(int(chain_id))
    return None
