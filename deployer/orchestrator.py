from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from deployer.account import DeployerAccount, format_native
from deployer.artifacts import DEFAULT_PLAN, ContractArtifact, DeploymentResult, PlanEntry, load_plan
from deployer.chain_config import ChainConfig, chain_or_default
from deployer.config import Settings
from deployer.contracts import ContractDeployer
from deployer.errors import (
    ChainNotAllowed,
    ConfigError,
    DeployError,
    DeployerError,
    DeploymentInProgress,
    InsufficientBalance,
    StoreError,
)
from deployer.lease import ChainLease, lease_path
from deployer.store import DeploymentLog, DeploymentRecord, DeploymentStore
from infra.endpoints import BoundClient, ClientFactory, ProviderSelector, build_endpoint_pool, http_client_factory
from infra.metrics import METRICS
from infra.rpc import get_chain_id

LOGGER = logging.getLogger("deployer.orchestrator")


class RunState(str, Enum):
    SELECTING_PROVIDER = "SelectingProvider"
    CHECKING_BALANCE = "CheckingBalance"
    DEPLOYING_INDEPENDENTS = "DeployingIndependents"
    DEPLOYING_DEPENDENTS = "DeployingDependents"
    PERSISTING = "Persisting"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class DeploymentOutcome:
    chain: str
    deployer: str
    results: List[DeploymentResult]
    record: DeploymentRecord
    endpoint: str

    @property
    def contracts(self) -> Dict[str, str]:
        return {r.name: r.address for r in self.results}

    @property
    def gas_used(self) -> int:
        return sum(int(r.gas_used) for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "chain": self.chain,
            "contracts": self.contracts,
            "deployer": self.deployer,
            "gasUsed": self.gas_used,
            "blockNumber": self.record.metadata.get("blockNumber"),
            "networkId": self.record.metadata.get("networkId"),
            "endpoint": self.endpoint,
            "transactions": [r.to_dict() for r in self.results],
        }


DeployerFactory = Callable[[DeployerAccount, Any, int], Any]


@dataclass
class _Run:
    run_id: str
    chain: str
    states: List[RunState] = field(default_factory=list)
    results: List[DeploymentResult] = field(default_factory=list)
    lease: Optional[ChainLease] = None
    in_flight: Optional[str] = None

    @property
    def addresses(self) -> Dict[str, str]:
        return {r.name: r.address for r in self.results}


class DeploymentOrchestrator:
    """Runs the deployment plan for one chain.

    SelectingProvider -> CheckingBalance -> DeployingIndependents ->
    DeployingDependents -> Persisting -> Done, or Failed from any state.
    A record is only written once every plan entry has an address.
    """

    def __init__(
        self,
        settings: Settings,
        store: DeploymentStore,
        *,
        log: Optional[DeploymentLog] = None,
        client_factory: Optional[ClientFactory] = None,
        deployer_factory: Optional[DeployerFactory] = None,
        plan: Sequence[PlanEntry] = DEFAULT_PLAN,
        chains_dir: Optional[Path] = None,
    ):
        self.settings = settings
        self.store = store
        self.log = log
        self.client_factory = client_factory or http_client_factory(
            timeout_s=settings.rpc_timeout_s, max_retries=settings.rpc_retry_count
        )
        self.deployer_factory = deployer_factory or self._contract_deployer
        self.plan = tuple(plan)
        self.chains_dir = chains_dir
        self.states: List[RunState] = []

    def _contract_deployer(self, account: DeployerAccount, rpc: Any, chain_id: int) -> ContractDeployer:
        s = self.settings
        return ContractDeployer(
            account,
            rpc,
            chain_id=chain_id,
            gas_buffer_bps=s.gas_buffer_bps,
            receipt_timeout_s=s.receipt_timeout_s,
            receipt_poll_s=s.receipt_poll_s,
            rpc_timeout_s=s.rpc_timeout_s,
        )

    def _enter(self, run: _Run, state: RunState) -> None:
        run.states.append(state)
        self.states = list(run.states)
        LOGGER.info("[%s] %s -> %s", run.run_id[:8], run.chain, state.value)

    def _event(self, chain: str, operation: str, status: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.log is None:
            return
        try:
            self.log.append(chain=chain, operation=operation, status=status, message=message, metadata=metadata)
        except OSError as exc:
            LOGGER.warning("deployment log write failed: %s", exc)

    def _preflight(self, chain: str) -> tuple:
        """Local checks only: allow-list, key, artifacts. No network."""
        if not self.settings.is_deployable(chain):
            raise ChainNotAllowed(chain, list(self.settings.deployment_chains))
        account = DeployerAccount.from_secret(self.settings.deployer_key)
        artifacts = load_plan(self.plan, self.settings.artifacts_dir)
        chain_cfg = chain_or_default(chain, base_dir=self.chains_dir)
        return account, artifacts, chain_cfg

    async def _check_network(self, chain_cfg: ChainConfig, bound: BoundClient) -> int:
        chain_id = await get_chain_id(bound.rpc, timeout_s=self.settings.rpc_timeout_s)
        if chain_cfg.chain_id is not None and chain_id != chain_cfg.chain_id:
            raise ConfigError(
                f"{bound.endpoint.label} serves chain id {chain_id}, expected {chain_cfg.chain_id} for {chain_cfg.name}"
            )
        return chain_id

    async def _deploy_all(self, run: _Run, deployer: Any, artifacts: List[ContractArtifact]) -> None:
        independents = [a for a in artifacts if not a.depends_on]
        dependents = [a for a in artifacts if a.depends_on]

        self._enter(run, RunState.DEPLOYING_INDEPENDENTS)
        for artifact in independents:
            await self._deploy_one(run, deployer, artifact)

        self._enter(run, RunState.DEPLOYING_DEPENDENTS)
        for artifact in dependents:
            await self._deploy_one(run, deployer, artifact)

    async def _deploy_one(self, run: _Run, deployer: Any, artifact: ContractArtifact) -> None:
        if run.lease is not None:
            held, holder = run.lease.refresh(run_id=run.run_id)
            if not held:
                LOGGER.error("[%s] lost the %s lease before %s", run.run_id[:8], run.chain, artifact.name)
                raise DeploymentInProgress(run.chain, holder).with_partial(run.addresses)
        run.in_flight = artifact.name
        try:
            result = await deployer.deploy(artifact, run.addresses)
        except DeployerError as exc:
            raise exc.with_partial(run.addresses)
        except Exception as exc:
            raise DeployError(artifact.name, str(exc)[:300] or type(exc).__name__, partial=run.addresses) from exc
        run.results.append(result)
        self._event(
            run.chain,
            "contract_deployed",
            "success",
            f"{result.name} deployed at {result.address}",
            result.to_dict(),
        )

    async def run(
        self,
        chain: str,
        *,
        rpc_url: Optional[str] = None,
        fallback_rpcs: Any = None,
        run_id: Optional[str] = None,
    ) -> DeploymentOutcome:
        chain = str(chain or "").strip().lower()
        run = _Run(run_id=run_id or uuid.uuid4().hex, chain=chain)
        self.states = []

        account, artifacts, chain_cfg = self._preflight(chain)
        candidates = build_endpoint_pool(
            chain_cfg, self.settings.provider_keys, rpc_url=rpc_url, fallback_rpcs=fallback_rpcs
        )

        bound: Optional[BoundClient] = None
        lease: Optional[ChainLease] = None
        METRICS.inc("deploy_runs_total", 1)
        self._event(chain, "deploy_started", "started", f"deployment requested by {account.address}", {"run_id": run.run_id})
        try:
            self._enter(run, RunState.SELECTING_PROVIDER)
            selector = ProviderSelector(self.client_factory, probe_timeout_s=self.settings.probe_timeout_s)
            bound = await selector.select(chain, candidates)

            lease = ChainLease(lease_path(self.settings.lock_dir, chain), ttl_s=self.settings.lease_ttl_s)
            ok, reason, holder = lease.acquire(run_id=run.run_id)
            if not ok:
                lease = None
                if reason == "already_running":
                    raise DeploymentInProgress(chain, holder)
                raise StoreError(f"cannot acquire deployment lease for {chain}: {reason}", chain=chain)
            run.lease = lease

            self._enter(run, RunState.CHECKING_BALANCE)
            chain_id = await self._check_network(chain_cfg, bound)
            balance = await account.balance(bound.rpc, timeout_s=self.settings.rpc_timeout_s)
            if balance < chain_cfg.min_balance_wei:
                raise InsufficientBalance(chain, account.address, balance, chain_cfg.min_balance_wei)
            LOGGER.info("deployer %s balance %s", account.address, format_native(balance, chain_cfg.native_symbol))

            deployer = self.deployer_factory(account, bound.rpc, chain_id)
            await self._deploy_all(run, deployer, artifacts)

            addresses = run.addresses
            missing = [a.name for a in artifacts if a.name not in addresses]
            if missing:
                raise DeployError(missing[0], "no deployment result", partial=addresses)

            self._enter(run, RunState.PERSISTING)
            blocks = [r.block_number for r in run.results if r.block_number is not None]
            record = DeploymentRecord(
                chain=chain,
                contract_addresses=addresses,
                deployer_address=account.address,
                verified=False,
                metadata={
                    "blockNumber": max(blocks + [bound.block_number]),
                    "networkId": chain_id,
                    "gasUsedTotal": sum(int(r.gas_used) for r in run.results),
                    "transactions": {r.name: r.transaction_hash for r in run.results},
                },
            )
            try:
                self.store.upsert(record)
            except Exception as exc:
                LOGGER.error("contracts deployed on %s but not persisted: %s", chain, addresses)
                raise StoreError(
                    f"deployment succeeded on-chain but persisting failed: {exc}", chain=chain, contracts=addresses
                ) from exc

            self._enter(run, RunState.DONE)
            METRICS.inc("deploy_runs_succeeded_total", 1)
            outcome = DeploymentOutcome(
                chain=chain,
                deployer=account.address,
                results=list(run.results),
                record=record,
                endpoint=bound.endpoint.label,
            )
            self._event(chain, "deploy_succeeded", "success", f"deployed {len(addresses)} contracts", outcome.to_dict())
            return outcome

        except DeployerError as exc:
            self._fail(run, exc)
            raise
        except Exception as exc:
            # Unknown failure after contracts went out must still report them.
            wrapped = DeployError(run.in_flight or "deployment", f"unexpected error: {exc}", partial=run.addresses)
            self._fail(run, wrapped)
            raise wrapped from exc
        finally:
            if lease is not None:
                lease.release(run_id=run.run_id)
            if bound is not None:
                await bound.close()

    def _fail(self, run: _Run, exc: DeployerError) -> None:
        failed_in = run.states[-1].value if run.states else None
        self._enter(run, RunState.FAILED)
        METRICS.inc("deploy_runs_failed_total", 1)
        METRICS.inc_reason("deploy_fail_by_code", exc.code, 1)
        if run.addresses:
            LOGGER.error(
                "deployment on %s failed in %s after contracts went on-chain: %s",
                run.chain,
                failed_in,
                run.addresses,
            )
        else:
            LOGGER.warning("deployment on %s failed in %s: %s", run.chain, failed_in, exc)
        payload = exc.to_dict()
        payload["failedIn"] = failed_in
        self._event(run.chain, "deploy_failed", "failed", str(exc), payload)
