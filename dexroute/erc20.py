from __future__ import annotations

import logging
from typing import Any

from eth_utils import to_checksum_address

from dexroute.dex.encoding import decode_words, encode_call

log = logging.getLogger(__name__)


def approve_calldata(spender: str, amount: int) -> str:
    return encode_call(
        "approve(address,uint256)",
        ["address", "uint256"],
        [to_checksum_address(spender), int(amount)],
    )


def allowance_calldata(owner: str, spender: str) -> str:
    return encode_call(
        "allowance(address,address)",
        ["address", "address"],
        [to_checksum_address(owner), to_checksum_address(spender)],
    )


async def allowance(client: Any, *, token: str, owner: str, spender: str, block: str = "latest") -> int:
    """ERC-20 allowance; a failed read counts as zero so the caller asks for approval."""
    if not token or not owner or not spender:
        return 0
    try:
        raw = await client.eth_call(str(token), allowance_calldata(owner, spender), block=block)
        return int(decode_words(["uint256"], raw)[0])
    except Exception as exc:
        log.debug("allowance read failed token=%s owner=%s spender=%s: %s", token, owner, spender, exc)
        return 0
