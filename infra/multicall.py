# infra/multicall.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

from dexroute import config
from infra.metrics import METRICS

log = logging.getLogger(__name__)

SIG_AGGREGATE3 = "aggregate3((address,bool,bytes)[])"
SEL_AGGREGATE3 = keccak(text=SIG_AGGREGATE3)[:4].hex()


@dataclass(frozen=True)
class Call:
    to: str
    data: str
    value: int = 0


@dataclass(frozen=True)
class CallResult:
    success: bool
    return_data: bytes = b""

    @property
    def ok(self) -> bool:
        return self.success and len(self.return_data) > 0


FAILED = CallResult(False, b"")


def _hex_to_bytes(raw: Any) -> bytes:
    if raw is None:
        return b""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    text = str(raw)
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def encode_aggregate3(calls: Sequence[Call]) -> str:
    entries = [(to_checksum_address(c.to), True, _hex_to_bytes(c.data)) for c in calls]
    return "0x" + SEL_AGGREGATE3 + encode(["(address,bool,bytes)[]"], [entries]).hex()


def decode_aggregate3(raw: Any, expected: int) -> List[CallResult]:
    blob = _hex_to_bytes(raw)
    (entries,) = decode(["(bool,bytes)[]"], blob)
    if len(entries) != expected:
        raise ValueError(f"aggregate3 returned {len(entries)} results for {expected} calls")
    return [CallResult(bool(ok), bytes(data)) for ok, data in entries]


async def _aggregate3(
    client: Any,
    calls: Sequence[Call],
    *,
    address: str,
    block: str,
    timeout_s: Optional[float],
) -> List[CallResult]:
    raw = await client.eth_call(address, encode_aggregate3(calls), block=block, timeout_s=timeout_s)
    return decode_aggregate3(raw, len(calls))


async def _one_by_one(
    client: Any,
    calls: Sequence[Call],
    *,
    block: str,
    timeout_s: Optional[float],
) -> List[CallResult]:
    if hasattr(client, "call_batch"):
        try:
            entries = await client.call_batch(
                "eth_call",
                [[{"to": c.to, "data": c.data}, block] for c in calls],
                timeout_s=timeout_s,
            )
            out: List[CallResult] = []
            for entry in entries:
                if "error" in entry or not entry.get("result"):
                    out.append(FAILED)
                else:
                    out.append(CallResult(True, _hex_to_bytes(entry["result"])))
            return out
        except Exception as exc:
            log.debug("json-rpc batch fallback failed, issuing single calls: %s", exc)

    async def _single(c: Call) -> CallResult:
        try:
            raw = await client.eth_call(c.to, c.data, block=block, timeout_s=timeout_s)
            return CallResult(True, _hex_to_bytes(raw))
        except Exception:
            return FAILED

    return list(await asyncio.gather(*[_single(c) for c in calls]))


async def multicall(
    client: Any,
    calls: Sequence[Call],
    *,
    address: Optional[str] = None,
    block: str = "latest",
    timeout_s: Optional[float] = None,
    chunk_size: Optional[int] = None,
) -> List[CallResult]:
    """Run read calls through Multicall3 aggregate3 with allowFailure set.

    The result list matches `calls` index for index. A reverted sub-call
    shows up as CallResult(success=False) and never affects its neighbours.
    When the aggregate round trip fails as a whole the chunk is retried as
    individual eth_calls so per-call isolation still holds.
    """
    if not calls:
        return []
    for c in calls:
        if int(c.value or 0) != 0:
            raise ValueError("multicall batches are read-only; call value must be 0")

    target = address or config.MULTICALL3_ADDRESS
    size = max(1, int(chunk_size or config.MULTICALL_CHUNK_SIZE))
    chunks = [list(calls[i : i + size]) for i in range(0, len(calls), size)]
    METRICS.observe("multicall_batch_size", float(len(calls)))

    async def _run_chunk(chunk: List[Call]) -> List[CallResult]:
        try:
            return await _aggregate3(client, chunk, address=target, block=block, timeout_s=timeout_s)
        except Exception as exc:
            METRICS.inc("multicall_fallback_total")
            log.debug("aggregate3 failed for %d calls, falling back: %s", len(chunk), exc)
            return await _one_by_one(client, chunk, block=block, timeout_s=timeout_s)

    per_chunk = await asyncio.gather(*[_run_chunk(chunk) for chunk in chunks])
    results: List[CallResult] = []
    for chunk_results in per_chunk:
        results.extend(chunk_results)
    return results
