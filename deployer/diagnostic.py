import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from deployer.account import DeployerAccount, format_native
from deployer.chain_config import chain_or_default
from deployer.config import DEPLOYER_KEY_ENV, PROVIDER_KEY_ENV, Settings
from deployer.errors import ConfigError
from deployer.store import DeploymentLog
from infra.endpoints import ClientFactory, RpcEndpoint, build_endpoint_pool, close_client, http_client_factory, probe_endpoint
from infra.rpc import ProbeResult

LOGGER = logging.getLogger("deployer.diagnostic")

CHECK_POINTS = 25

REC_SIGNING_KEY = f"Configure {DEPLOYER_KEY_ENV} to enable deployments"
REC_PROVIDER_KEY = "Add at least one RPC provider API key ({}) for reliable access".format(
    ", ".join(PROVIDER_KEY_ENV.values())
)
REC_NO_ENDPOINT = "All RPC connections failed. Check network connectivity or supply rpcUrl/fallbackRpcs"
REC_FUND = "Fund deployer wallet {address} with at least {amount}"


def _candidates(
    chain: str,
    settings: Settings,
    *,
    rpc_url: Optional[str] = None,
    fallback_rpcs: Any = None,
    chains_dir: Optional[Path] = None,
) -> List[RpcEndpoint]:
    chain_cfg = chain_or_default(chain, base_dir=chains_dir)
    try:
        return build_endpoint_pool(chain_cfg, settings.provider_keys, rpc_url=rpc_url, fallback_rpcs=fallback_rpcs)
    except ConfigError:
        return []


async def probe_many(
    endpoints: Sequence[RpcEndpoint],
    client_factory: ClientFactory,
    *,
    timeout_s: float,
    concurrency: int,
) -> List[Tuple[RpcEndpoint, Any, ProbeResult]]:
    """Probe ``endpoints`` at most ``concurrency`` at a time.

    Results keep input order. Clients are returned open; the caller closes
    them.
    """

    sem = asyncio.Semaphore(max(1, int(concurrency)))

    async def _one(endpoint: RpcEndpoint) -> Tuple[RpcEndpoint, Any, ProbeResult]:
        async with sem:
            rpc = client_factory(endpoint)
            result = await probe_endpoint(endpoint, rpc, timeout_s=timeout_s)
            return endpoint, rpc, result

    return list(await asyncio.gather(*[_one(e) for e in endpoints]))


async def _close_all(probed: Sequence[Tuple[RpcEndpoint, Any, ProbeResult]]) -> None:
    for _, rpc, _ in probed:
        await close_client(rpc)


async def diagnose(
    chain: str,
    settings: Settings,
    *,
    client_factory: Optional[ClientFactory] = None,
    chains_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """Read-only health report for ``chain``.

    Every check runs regardless of the others; nothing here submits a
    transaction or takes the chain lease.
    """

    chain = str(chain or "").strip().lower()
    factory = client_factory or http_client_factory(timeout_s=settings.rpc_timeout_s)
    chain_cfg = chain_or_default(chain, base_dir=chains_dir)
    secrets = settings.secrets_present()
    recommendations: List[str] = []

    account: Optional[DeployerAccount] = None
    key_error: Optional[str] = None
    if settings.deployer_key:
        try:
            account = DeployerAccount.from_secret(settings.deployer_key)
        except ConfigError as exc:
            key_error = str(exc)

    sample = _candidates(chain, settings, chains_dir=chains_dir)[: max(0, settings.diagnostic_sample_size)]
    probed = await probe_many(
        sample,
        factory,
        timeout_s=settings.probe_timeout_s,
        concurrency=settings.diagnostic_concurrency,
    )

    balance: Optional[int] = None
    balance_error: Optional[str] = None
    try:
        live = [(e, rpc) for e, rpc, r in probed if r.ok]
        if account is not None and live:
            endpoint, rpc = live[0]
            try:
                balance = await account.balance(rpc, timeout_s=settings.rpc_timeout_s)
            except Exception as exc:
                balance_error = str(exc)[:200]
                LOGGER.warning("balance lookup via %s failed: %s", endpoint.label, balance_error)
    finally:
        await _close_all(probed)

    checks = {
        "signingKey": account is not None,
        "providerKey": bool(settings.provider_keys),
        "endpointReachable": any(r.ok for _, _, r in probed),
        "balanceSufficient": balance is not None and balance >= chain_cfg.min_balance_wei,
    }

    if not checks["signingKey"]:
        recommendations.append(key_error or REC_SIGNING_KEY)
    if not checks["providerKey"]:
        recommendations.append(REC_PROVIDER_KEY)
    if not checks["endpointReachable"]:
        recommendations.append(REC_NO_ENDPOINT)
    if account is not None and checks["endpointReachable"] and not checks["balanceSufficient"]:
        if balance is None:
            recommendations.append(f"Could not read deployer balance: {balance_error}")
        else:
            recommendations.append(
                REC_FUND.format(
                    address=account.address,
                    amount=format_native(chain_cfg.min_balance_wei, chain_cfg.native_symbol),
                )
            )

    score = CHECK_POINTS * sum(1 for ok in checks.values() if ok)
    return {
        "success": True,
        "chain": chain,
        "secretsPresent": secrets,
        "endpointTests": {e.label: r.to_dict() for e, _, r in probed},
        "deployerAddress": account.address if account is not None else None,
        "deployerBalance": str(balance) if balance is not None else None,
        "minimumBalance": str(chain_cfg.min_balance_wei),
        "checks": checks,
        "healthScore": score,
        "recommendations": recommendations,
    }


async def sweep_endpoints(
    chain: str,
    settings: Settings,
    *,
    rpc_url: Optional[str] = None,
    fallback_rpcs: Any = None,
    client_factory: Optional[ClientFactory] = None,
    chains_dir: Optional[Path] = None,
    log: Optional[DeploymentLog] = None,
) -> Dict[str, Any]:
    """Probe every candidate endpoint for ``chain`` and summarize."""

    chain = str(chain or "").strip().lower()
    factory = client_factory or http_client_factory(timeout_s=settings.rpc_timeout_s)
    candidates = _candidates(chain, settings, rpc_url=rpc_url, fallback_rpcs=fallback_rpcs, chains_dir=chains_dir)
    probed = await probe_many(
        candidates,
        factory,
        timeout_s=settings.probe_timeout_s,
        concurrency=settings.diagnostic_concurrency,
    )
    await _close_all(probed)

    tests = {e.label: r.to_dict() for e, _, r in probed}
    working = [e.label for e, _, r in probed if r.ok]
    failed = [e.label for e, _, r in probed if not r.ok]

    recommendations: List[str] = []
    if not working:
        recommendations.append(REC_NO_ENDPOINT)
    elif failed:
        recommendations.append(f"Remove or replace {len(failed)} failing endpoint(s): {', '.join(failed)}")
    if not settings.provider_keys:
        recommendations.append(REC_PROVIDER_KEY)
    if working:
        fastest = min(
            ((e.label, r.latency_ms) for e, _, r in probed if r.ok and r.latency_ms is not None),
            key=lambda x: x[1],
            default=None,
        )
        if fastest is not None:
            recommendations.append(f"Fastest endpoint: {fastest[0]} ({fastest[1]} ms)")

    out = {
        "success": True,
        "chain": chain,
        "total_rpcs": len(probed),
        "working_rpcs": len(working),
        "failed_rpcs": len(failed),
        "rpc_tests": tests,
        "recommendations": recommendations,
    }
    if log is not None:
        try:
            log.append(
                chain=chain,
                operation="rpc_test",
                status="success" if working else "failed",
                message=f"{len(working)}/{len(probed)} endpoints working",
                metadata={"rpc_tests": tests},
            )
        except OSError as exc:
            LOGGER.warning("deployment log write failed: %s", exc)
    return out
