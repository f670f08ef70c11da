from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from deployer.chain_config import ChainConfig
from deployer.errors import ConfigError, MultiEndpointFailure
from infra.rpc import AsyncRPC, ProbeResult, mask_url, normalize_url, probe, split_urls

LOGGER = logging.getLogger("deployer.rpc")

SOURCE_CALLER = "caller"
SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class RpcEndpoint:
    url: str
    authenticated: bool
    source_rank: int
    source: str

    @property
    def label(self) -> str:
        """Printable form; provider URLs embed API keys and are masked."""
        if self.authenticated:
            return f"{self.source}:{mask_url(self.url)}"
        return self.url


def build_endpoint_pool(
    chain: ChainConfig,
    provider_keys: Mapping[str, str],
    *,
    rpc_url: Optional[str] = None,
    fallback_rpcs: Any = None,
) -> List[RpcEndpoint]:
    """Return the candidate list for ``chain`` in probe order.

    Order:
      1) authenticated providers, in ``provider_keys`` order
      2) caller-supplied ``rpc_url``
      3) caller-supplied ``fallback_rpcs``
      4) public fallbacks from the chain registry
    De-duplicated by normalized URL; first occurrence wins.
    """

    staged: List[tuple] = []
    for provider, key in provider_keys.items():
        url = chain.provider_url(provider, key)
        if url:
            staged.append((normalize_url(url), True, provider))
    if rpc_url:
        staged.extend((u, False, SOURCE_CALLER) for u in split_urls(rpc_url))
    staged.extend((u, False, SOURCE_FALLBACK) for u in split_urls(fallback_rpcs))
    staged.extend((u, False, SOURCE_FALLBACK) for u in split_urls(chain.rpc_urls))

    out: List[RpcEndpoint] = []
    seen = set()
    for url, authenticated, source in staged:
        if not url or url in seen:
            continue
        seen.add(url)
        out.append(RpcEndpoint(url=url, authenticated=authenticated, source_rank=len(out), source=source))

    if not out:
        raise ConfigError(f"No RPC endpoints configured for chain {chain.name}")
    return out


ClientFactory = Callable[[RpcEndpoint], Any]


def http_client_factory(*, timeout_s: float, max_retries: int = 0) -> ClientFactory:
    def _factory(endpoint: RpcEndpoint) -> AsyncRPC:
        return AsyncRPC(endpoint.url, default_timeout_s=timeout_s, max_retries=max_retries)

    return _factory


async def close_client(rpc: Any) -> None:
    closer = getattr(rpc, "close", None)
    if closer is None:
        return
    try:
        await closer()
    except Exception as exc:
        LOGGER.debug("closing rpc client failed: %s", exc)


@dataclass
class BoundClient:
    """A probed, live endpoint. Owned by a single operation and closed by it."""

    endpoint: RpcEndpoint
    rpc: Any
    block_number: int
    latency_ms: Optional[float] = None
    failures: List[Dict[str, Any]] = field(default_factory=list)

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        return await self.rpc.call(method, params, timeout_s=timeout_s)

    async def close(self) -> None:
        await close_client(self.rpc)


def failure_entry(endpoint: RpcEndpoint, result: ProbeResult) -> Dict[str, Any]:
    return {
        "url": endpoint.label,
        "authenticated": endpoint.authenticated,
        "source": endpoint.source,
        "sourceRank": endpoint.source_rank,
        "error": result.error,
        "latency": result.latency_ms,
    }


async def probe_endpoint(endpoint: RpcEndpoint, rpc: Any, *, timeout_s: float) -> ProbeResult:
    return await probe(rpc, label=endpoint.label, timeout_s=timeout_s)


class ProviderSelector:
    """Walk candidates strictly in order; the first live one wins.

    One probe per candidate. A failed endpoint is never retried within a
    selection, the selector just moves on.
    """

    def __init__(self, client_factory: ClientFactory, *, probe_timeout_s: float):
        self.client_factory = client_factory
        self.probe_timeout_s = float(probe_timeout_s)

    async def select(self, chain: str, candidates: Iterable[RpcEndpoint]) -> BoundClient:
        failures: List[Dict[str, Any]] = []
        for endpoint in candidates:
            rpc = self.client_factory(endpoint)
            result = await probe_endpoint(endpoint, rpc, timeout_s=self.probe_timeout_s)
            if result.ok:
                LOGGER.info(
                    "selected %s for %s at block %s (%d failed before it)",
                    endpoint.label,
                    chain,
                    result.block_number,
                    len(failures),
                )
                return BoundClient(
                    endpoint=endpoint,
                    rpc=rpc,
                    block_number=int(result.block_number or 0),
                    latency_ms=result.latency_ms,
                    failures=failures,
                )
            failures.append(failure_entry(endpoint, result))
            await close_client(rpc)
        raise MultiEndpointFailure(chain, failures)
