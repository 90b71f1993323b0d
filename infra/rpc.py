# infra/rpc.py

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from dexroute import config
from dexroute.errors import ConfigurationError
from infra.metrics import METRICS

log = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class RPCError(Exception):
    """A JSON-RPC call that failed after retries.

    `data` carries the revert payload for eth_call reverts when the node
    returned one, `reason` is a short normalized failure category.
    """

    def __init__(self, message: str, *, reason: str = "rpc_error", data: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.data = data


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if u and "://" not in u:
        u = "https://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def _split_urls(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    parts: List[str] = []
    for chunk in str(raw).replace("\n", ",").split(","):
        u = _normalize_url(chunk)
        if u:
            parts.append(u)
    return parts


def _normalize_rpc_error(msg: Optional[str]) -> str:
    text = str(msg or "").lower()
    if "timeout" in text:
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_5" in text:
        return "http_5xx"
    if "revert" in text:
        return "revert"
    if "rpc" in text or "http_" in text:
        return "rpc_error"
    return "internal_error"


def _extract_revert_hex(err_data: Any) -> Optional[str]:
    if isinstance(err_data, str):
        return err_data if err_data.startswith("0x") else "0x" + err_data
    if isinstance(err_data, dict):
        for key in ("data", "result"):
            if isinstance(err_data.get(key), str):
                return _extract_revert_hex(err_data[key])
        for v in err_data.values():
            if isinstance(v, dict):
                found = _extract_revert_hex(v.get("return") or v.get("data"))
                if found:
                    return found
    return None


def get_rpc_urls(chain: Any = None) -> List[str]:
    """Return RPC URL candidates for a chain in priority order.

    Order:
      1) env RPC_URL_<chain_id> (comma/newline list)
      2) chain config rpc_urls
      3) env RPC_URLS / RPC_URL (chain agnostic)
    """
    urls: List[str] = []
    chain_id = getattr(chain, "chain_id", None)
    if chain_id is not None:
        urls.extend(_split_urls(os.getenv(f"RPC_URL_{chain_id}")))
        urls.extend(_normalize_url(u) for u in (getattr(chain, "rpc_urls", None) or []) if str(u).strip())
    urls.extend(_split_urls(os.getenv("RPC_URLS")))
    urls.extend(_split_urls(os.getenv("RPC_URL")))

    out: List[str] = []
    seen = set()
    for u in urls:
        if u in seen:
            continue
        seen.add(u)
        out.append(u)
    return out


def _clamp_timeout(timeout_s: Optional[float], default_s: float) -> float:
    to_s = float(timeout_s) if timeout_s is not None else float(default_s)
    min_t = float(config.RPC_TIMEOUT_MIN_S)
    max_t = max(min_t, float(config.RPC_TIMEOUT_MAX_S))
    return max(min_t, min(max_t, to_s))


class AsyncRPC:
    """Async JSON-RPC client over one or more endpoints.

    - persistent aiohttp session with a pooled connector, so the aggregator
      can keep many eth_calls in flight at once
    - per-call timeouts clamped to RPC_TIMEOUT_MIN_S..RPC_TIMEOUT_MAX_S
    - retries with exponential backoff on timeouts, 429 and 5xx, then
      failover to the next endpoint
    - reverts surface as RPCError(reason="revert") with the revert data
    """

    def __init__(
        self,
        urls: Sequence[str] | str,
        *,
        default_timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
        connection_limit: Optional[int] = None,
    ):
        if isinstance(urls, str):
            urls = [urls]
        cleaned = [_normalize_url(u) for u in urls if str(u).strip()]
        if not cleaned:
            raise ValueError("AsyncRPC requires at least one url")
        self.urls: List[str] = cleaned
        self.default_timeout_s = float(
            default_timeout_s if default_timeout_s is not None else config.RPC_DEFAULT_TIMEOUT_S
        )
        self.max_retries = int(max_retries if max_retries is not None else config.RPC_RETRY_COUNT)
        self.backoff_base_s = float(backoff_base_s if backoff_base_s is not None else config.RPC_BACKOFF_BASE_S)
        self.connection_limit = int(connection_limit or config.RPC_CONNECTION_LIMIT)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self.last_url: Optional[str] = None

    @property
    def url(self) -> str:
        return self.urls[0]

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        connector = aiohttp.TCPConnector(limit=self.connection_limit, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "AsyncRPC":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _next_id(self, n: int = 1) -> int:
        self._id += n
        return self._id - n + 1

    async def _post(self, session: aiohttp.ClientSession, url: str, payload: Any, timeout_s: float) -> Any:
        async def _do() -> Any:
            async with session.post(url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise aiohttp.ClientResponseError(
                        request_info=resp.request_info,
                        history=resp.history,
                        status=resp.status,
                        message=text,
                        headers=resp.headers,
                    )
                return await resp.json(content_type=None)

        return await asyncio.wait_for(_do(), timeout=timeout_s)

    def _record_latency(self, host: str, t0: float) -> None:
        dt_ms = (time.perf_counter() - t0) * 1000.0
        METRICS.observe("rpc_latency_ms", dt_ms)
        METRICS.observe(f"rpc_latency_ms:{host}", dt_ms)

    async def call(
        self,
        method: str,
        params: list,
        *,
        timeout_s: Optional[float] = None,
        allow_revert_data: bool = False,
    ) -> Any:
        """Perform a JSON-RPC call.

        Reverts are never retried. With allow_revert_data=True an eth_call
        revert returns its raw payload instead of raising, for contracts
        that report results through revert data.
        """
        session = await self._get_session()
        to_s = _clamp_timeout(timeout_s, self.default_timeout_s)
        last_err: Optional[str] = None
        for url in self.urls:
            host = _url_host(url)
            self.last_url = url
            for attempt in range(self.max_retries + 1):
                payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}
                t0 = time.perf_counter()
                METRICS.inc("rpc_requests_total")
                METRICS.inc_reason("rpc_requests_by_endpoint", host)
                try:
                    data = await self._post(session, url, payload, to_s)
                except asyncio.TimeoutError:
                    self._record_latency(host, t0)
                    last_err = f"timeout({to_s}s)"
                except aiohttp.ClientResponseError as e:
                    self._record_latency(host, t0)
                    last_err = f"http_{e.status}"
                    if e.status not in _RETRYABLE_STATUS:
                        break
                except (aiohttp.ClientError, ValueError) as e:
                    self._record_latency(host, t0)
                    last_err = f"{type(e).__name__}: {e}"
                else:
                    self._record_latency(host, t0)
                    if isinstance(data, dict) and "error" in data:
                        err = data["error"]
                        revert_hex = _extract_revert_hex(err.get("data") if isinstance(err, dict) else None)
                        if method == "eth_call" and revert_hex is not None:
                            if allow_revert_data:
                                return revert_hex
                            METRICS.inc_reason("rpc_fail_by_reason", "revert")
                            raise RPCError(f"execution reverted: {err}", reason="revert", data=revert_hex)
                        message = str(err.get("message") if isinstance(err, dict) else err)
                        if "revert" in message.lower():
                            METRICS.inc_reason("rpc_fail_by_reason", "revert")
                            raise RPCError(message, reason="revert")
                        last_err = f"rpc_error:{message}"
                    elif isinstance(data, dict) and "result" in data:
                        return data["result"]
                    else:
                        last_err = "rpc_error:malformed_response"

                if attempt < self.max_retries:
                    sleep_s = self.backoff_base_s * (2 ** attempt) + random.random() * 0.1
                    if last_err and "http_429" in last_err:
                        sleep_s += float(config.RPC_RATE_LIMIT_BACKOFF_S)
                    await asyncio.sleep(sleep_s)
            log.debug("rpc %s failed on %s: %s", method, host, last_err)

        reason = _normalize_rpc_error(last_err)
        METRICS.inc_reason("rpc_fail_by_reason", reason)
        raise RPCError(f"RPC call failed after retries: {last_err}", reason=reason)

    async def call_batch(
        self,
        method: str,
        params_list: List[list],
        *,
        timeout_s: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """One JSON-RPC batch; each entry is {"result": ...} or {"error": ...} in input order."""
        if not params_list:
            return []
        session = await self._get_session()
        to_s = _clamp_timeout(timeout_s, self.default_timeout_s)
        start_id = self._next_id(len(params_list))
        payload = [
            {"jsonrpc": "2.0", "id": start_id + i, "method": method, "params": params}
            for i, params in enumerate(params_list)
        ]
        host = _url_host(self.url)
        t0 = time.perf_counter()
        METRICS.inc("rpc_batch_requests_total")
        try:
            data = await self._post(session, self.url, payload, to_s)
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as exc:
            raise RPCError(f"batch call failed: {exc}", reason=_normalize_rpc_error(str(exc) or "timeout")) from exc
        finally:
            self._record_latency(host, t0)
        if not isinstance(data, list):
            raise RPCError("batch_response_not_list", reason="rpc_error")

        by_id: Dict[int, Any] = {}
        for entry in data:
            if isinstance(entry, dict) and isinstance(entry.get("id"), int):
                by_id[int(entry["id"])] = entry

        out: List[Dict[str, Any]] = []
        for i in range(len(params_list)):
            entry = by_id.get(start_id + i)
            if not isinstance(entry, dict):
                out.append({"error": "missing"})
            elif "error" in entry:
                out.append({"error": entry.get("error")})
            else:
                out.append({"result": entry.get("result")})
        return out

    async def eth_call(
        self,
        to: str,
        data: str,
        block: str = "latest",
        *,
        timeout_s: Optional[float] = None,
        allow_revert_data: bool = False,
    ) -> str:
        return await self.call(
            "eth_call",
            [{"to": to, "data": data}, block],
            timeout_s=timeout_s,
            allow_revert_data=allow_revert_data,
        )

    async def get_block_number(self, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("eth_blockNumber", [], timeout_s=timeout_s)
        return int(res, 16)

    async def get_chain_id(self, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("eth_chainId", [], timeout_s=timeout_s)
        return int(res, 16)


def client_for_chain(chain: Any, **kwargs: Any) -> AsyncRPC:
    urls = get_rpc_urls(chain)
    if not urls:
        raise ConfigurationError(f"no RPC url configured for chain {getattr(chain, 'chain_id', chain)}")
    return AsyncRPC(urls, **kwargs)
