# infra/rpc.py

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from deployer import config
from infra.metrics import METRICS

LOGGER = logging.getLogger("deployer.rpc")

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u.rstrip("/")


def url_host(url: str) -> str:
    u = normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def split_urls(raw: Any) -> List[str]:
    """Accept a list, or a comma/newline separated string, of URLs."""
    if not raw:
        return []
    chunks = raw if isinstance(raw, (list, tuple)) else str(raw).replace("\n", ",").split(",")
    parts: List[str] = []
    for chunk in chunks:
        u = normalize_url(str(chunk or ""))
        if u:
            parts.append(u)
    return parts


def mask_url(url: str) -> str:
    raw = str(url or "").strip()
    if not raw:
        return raw
    scheme = ""
    rest = raw
    if "://" in raw:
        scheme, rest = raw.split("://", 1)
    host = rest.split("/", 1)[0]
    if scheme:
        return f"{scheme}://{host}/..."
    return host


def normalize_rpc_error(msg: Any) -> str:
    text = str(msg or "").lower()
    if "timeout" in text:
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_401" in text or "http_403" in text or "unauthorized" in text:
        return "unauthorized"
    if "http_5" in text:
        return "http_5xx"
    if "decode" in text or "json" in text:
        return "decode_error"
    if "rpc" in text or "http_" in text:
        return "rpc_error"
    if "connect" in text or "dns" in text or "name resolution" in text:
        return "connection_error"
    return "internal_error"


class RPCError(Exception):
    """JSON-RPC level error (node answered with an ``error`` object)."""

    def __init__(self, method: str, error: Any):
        message = error.get("message") if isinstance(error, dict) else error
        super().__init__(f"rpc_error:{method}:{message}")
        self.method = method
        self.error = error


class AsyncRPC:
    """Async JSON-RPC client bound to one endpoint.

    - persistent aiohttp session
    - per-call timeouts, clamped to [RPC_TIMEOUT_MIN_S, RPC_TIMEOUT_MAX_S]
    - optional retries with exponential backoff for 429/5xx only
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: float = config.RPC_DEFAULT_TIMEOUT_S,
        max_retries: int = config.RPC_RETRY_COUNT,
        backoff_base_s: float = config.RPC_BACKOFF_BASE_S,
    ):
        self.url = normalize_url(url)
        self.default_timeout_s = float(default_timeout_s)
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_s = float(backoff_base_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=10, ttl_dns_cache=300))
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _clamp_timeout(self, timeout_s: Optional[float]) -> float:
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        min_t = float(config.RPC_TIMEOUT_MIN_S)
        max_t = max(min_t, float(config.RPC_TIMEOUT_MAX_S))
        return max(min_t, min(max_t, to_s))

    def _observe(self, host: str, t0: float) -> float:
        dt_ms = (time.perf_counter() - t0) * 1000.0
        METRICS.observe("rpc_latency_ms", dt_ms)
        METRICS.observe(f"rpc_latency_ms:{host}", dt_ms)
        return dt_ms

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        """Perform a JSON-RPC call and return ``result``.

        Raises ``RPCError`` when the node answers with an error object and a
        plain ``Exception`` once transport retries are exhausted.
        """

        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        session = await self._get_session()
        to_s = self._clamp_timeout(timeout_s)
        host = url_host(self.url)
        last_err: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            t0 = time.perf_counter()
            METRICS.inc("rpc_requests_total", 1)
            METRICS.inc_reason("rpc_requests_by_endpoint", host, 1)
            try:
                async def _do():
                    async with session.post(self.url, json=payload) as resp:
                        if resp.status >= 400:
                            text = await resp.text()
                            raise aiohttp.ClientResponseError(
                                request_info=resp.request_info,
                                history=resp.history,
                                status=resp.status,
                                message=text[:200],
                                headers=resp.headers,
                            )
                        return await resp.json(content_type=None)

                data = await asyncio.wait_for(_do(), timeout=to_s)
                self._observe(host, t0)
                if isinstance(data, dict) and "error" in data:
                    raise RPCError(method, data["error"])
                if not isinstance(data, dict) or "result" not in data:
                    last_err = "decode_error: missing result"
                    break
                return data["result"]

            except asyncio.TimeoutError:
                self._observe(host, t0)
                last_err = f"timeout({to_s}s)"
            except aiohttp.ClientResponseError as e:
                self._observe(host, t0)
                last_err = f"http_{e.status}"
                if e.status not in _RETRYABLE_STATUS:
                    break
            except (aiohttp.ClientError, ValueError) as e:
                self._observe(host, t0)
                last_err = f"{type(e).__name__}: {e}"

            if attempt < self.max_retries:
                sleep_s = (self.backoff_base_s * (2 ** attempt)) + random.random() * 0.25
                if last_err and "http_429" in last_err:
                    sleep_s += float(config.RPC_RATE_LIMIT_BACKOFF_S)
                await asyncio.sleep(sleep_s)

        METRICS.inc_reason("rpc_fail_by_reason", normalize_rpc_error(last_err), 1)
        raise Exception(f"RPC call {method} failed: {last_err}")


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


async def get_block_number(rpc: Any, *, timeout_s: Optional[float] = None) -> int:
    return _to_int(await rpc.call("eth_blockNumber", [], timeout_s=timeout_s))


async def get_chain_id(rpc: Any, *, timeout_s: Optional[float] = None) -> int:
    return _to_int(await rpc.call("eth_chainId", [], timeout_s=timeout_s))


async def get_balance(rpc: Any, address: str, *, block: str = "latest", timeout_s: Optional[float] = None) -> int:
    return _to_int(await rpc.call("eth_getBalance", [address, block], timeout_s=timeout_s))


async def get_transaction_count(
    rpc: Any, address: str, *, block: str = "pending", timeout_s: Optional[float] = None
) -> int:
    return _to_int(await rpc.call("eth_getTransactionCount", [address, block], timeout_s=timeout_s))


@dataclass(frozen=True)
class ProbeResult:
    url: str
    ok: bool
    block_number: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok, "latency": self.latency_ms}
        if self.ok:
            out["blockNumber"] = self.block_number
        else:
            out["error"] = self.error
            out["reason"] = normalize_rpc_error(self.error)
        return out


async def probe(rpc: Any, *, label: str, timeout_s: float = config.RPC_PROBE_TIMEOUT_S) -> ProbeResult:
    """Single chain-head query against ``rpc``, raced against ``timeout_s``.

    Never raises; failures come back as ``ProbeResult(ok=False)``.
    """

    t0 = time.perf_counter()
    try:
        block = await asyncio.wait_for(get_block_number(rpc, timeout_s=timeout_s), timeout=float(timeout_s))
    except asyncio.TimeoutError:
        err = f"timeout({float(timeout_s)}s)"
    except Exception as exc:
        err = str(exc) or type(exc).__name__
    else:
        latency = round((time.perf_counter() - t0) * 1000.0, 1)
        METRICS.inc("probe_ok_total", 1)
        METRICS.observe("probe_latency_ms", latency)
        return ProbeResult(url=label, ok=True, block_number=int(block), latency_ms=latency)

    latency = round((time.perf_counter() - t0) * 1000.0, 1)
    METRICS.inc("probe_fail_total", 1)
    METRICS.inc_reason("probe_fail_by_reason", normalize_rpc_error(err), 1)
    LOGGER.warning("probe failed for %s: %s", label, err[:200])
    return ProbeResult(url=label, ok=False, latency_ms=latency, error=err[:300])
