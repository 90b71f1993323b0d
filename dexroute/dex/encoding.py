from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

from dexroute.errors import ExecutionEncodingError

_FEE_RE = re.compile(r"fee:\s*([0-9]+(?:\.[0-9]+)?)\s*%", re.IGNORECASE)
_FEE_UNITS = Decimal(10_000)


def selector(signature: str) -> str:
    return keccak(text=signature)[:4].hex()


def encode_call(signature: str, types: List[str], values: List[Any]) -> str:
    return "0x" + selector(signature) + encode(types, values).hex()


def decode_words(types: List[str], raw: Any) -> Tuple[Any, ...]:
    return decode(types, to_bytes(raw))


def to_bytes(raw: Any) -> bytes:
    if raw is None:
        return b""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    text = str(raw)
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def checksum(address: str) -> str:
    return to_checksum_address(str(address))


def format_fee_detail(fee_tier: int) -> str:
    """500 -> "Fee: 0.05%", 3000 -> "Fee: 0.3%", 10000 -> "Fee: 1%"."""
    pct = Decimal(int(fee_tier)) / _FEE_UNITS
    text = format(pct.normalize(), "f")
    return f"Fee: {text}%"


def parse_fee_detail(detail: str) -> int:
    m = _FEE_RE.search(str(detail or ""))
    if not m:
        raise ExecutionEncodingError(f"hop detail has no fee tier: {detail!r}")
    try:
        units = Decimal(m.group(1)) * _FEE_UNITS
    except InvalidOperation as exc:
        raise ExecutionEncodingError(f"unparseable fee tier in {detail!r}") from exc
    if units != units.to_integral_value():
        raise ExecutionEncodingError(f"fee tier {m.group(1)}% is not a whole tier")
    return int(units)


def hop_fee_tier(hop: Any, known_tiers: Optional[Iterable[int]] = None) -> int:
    """Fee tier chosen at quote time for a hop.

    Prefers the typed field; falls back to the detail string. The tier must
    belong to the family's tier list when one is given.
    """
    tier = getattr(hop, "fee_tier", None)
    if tier is None:
        tier = parse_fee_detail(getattr(hop, "detail", ""))
    tier = int(tier)
    if known_tiers is not None and tier not in set(int(t) for t in known_tiers):
        raise ExecutionEncodingError(f"unknown fee tier {tier} for {getattr(hop, 'dex_id', '?')}")
    return tier


def encode_v3_path(tokens: Sequence[str], fees: Sequence[int]) -> bytes:
    """token(20) + fee(3) + token(20) + ... + token(20)."""
    if len(tokens) != len(fees) + 1 or len(tokens) < 2:
        raise ExecutionEncodingError(f"path needs len(tokens) == len(fees) + 1, got {len(tokens)}/{len(fees)}")
    out = bytearray()
    for i, token in enumerate(tokens):
        out += to_bytes(token)[-20:].rjust(20, b"\x00")
        if i < len(fees):
            fee = int(fees[i])
            if fee < 0 or fee >= 1 << 24:
                raise ExecutionEncodingError(f"fee {fee} does not fit uint24")
            out += fee.to_bytes(3, "big")
    return bytes(out)


def decode_v3_path(path_bytes: bytes) -> Tuple[List[str], List[int]]:
    tokens: List[str] = []
    fees: List[int] = []
    data = bytes(path_bytes)
    i = 0
    while i + 20 <= len(data):
        tokens.append("0x" + data[i : i + 20].hex())
        i += 20
        if i + 3 > len(data):
            break
        fees.append(int.from_bytes(data[i : i + 3], "big"))
        i += 3
    return tokens, fees


def encode_address_path(tokens: Sequence[str]) -> bytes:
    """Plain concatenated addresses, for pools without per-hop fees."""
    if len(tokens) < 2:
        raise ExecutionEncodingError("path needs at least two tokens")
    return b"".join(to_bytes(t)[-20:].rjust(20, b"\x00") for t in tokens)


def route_tokens(hops: Sequence[Any]) -> List[str]:
    """Token sequence across hops; raises when hop outputs and inputs do not line up."""
    if not hops:
        raise ExecutionEncodingError("route has no hops")
    tokens: List[str] = [hops[0].path[0]]
    for i, hop in enumerate(hops):
        if len(hop.path) < 2:
            raise ExecutionEncodingError(f"hop {i} path is too short")
        if hop.path[0].lower() != tokens[-1].lower():
            raise ExecutionEncodingError(f"path continuity broken at hop {i}")
        tokens.extend(hop.path[1:])
    return tokens
