from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from eth_utils import is_address, to_checksum_address

from deployer.account import DeployerAccount
from deployer.artifacts import DEFAULT_PLAN, PlanEntry
from deployer.chain_config import chain_or_default
from deployer.config import Settings
from deployer.diagnostic import diagnose, sweep_endpoints
from deployer.errors import ChainNotAllowed, ConfigError, DeployerError, InvalidRequest
from deployer.orchestrator import DeploymentOrchestrator
from deployer.store import DeploymentLog, DeploymentRecord, DeploymentStore, JsonFileDeploymentStore
from infra.endpoints import ClientFactory, build_endpoint_pool
from infra.metrics import METRICS

LOGGER = logging.getLogger("deployer.router")

# Body fields that would carry a signing key. The key only ever comes from the environment.
FORBIDDEN_FIELDS = ("privateKey", "private_key", "deployerKey", "deployer_key", "secretKey", "mnemonic")

MAX_LOG_LIMIT = 1000


@dataclass(frozen=True)
class DeployRequest:
    chain: str
    rpc_url: Optional[str] = None
    fallback_rpcs: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AddressesRequest:
    chain: str


@dataclass(frozen=True)
class StatusRequest:
    pass


@dataclass(frozen=True)
class VerifyRequest:
    chain: str


@dataclass(frozen=True)
class DiagnoseRequest:
    chain: str


@dataclass(frozen=True)
class HealthRequest:
    pass


@dataclass(frozen=True)
class RpcSweepRequest:
    chain: str
    rpc_url: Optional[str] = None
    fallback_rpcs: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LogsRequest:
    chain: str
    limit: int = 50


@dataclass(frozen=True)
class StoreContractsRequest:
    chain: str
    contracts: Dict[str, str]
    deployer: Optional[str] = None


@dataclass(frozen=True)
class DeploymentInfoRequest:
    chain: Optional[str] = None


Request = Union[
    DeployRequest,
    AddressesRequest,
    StatusRequest,
    VerifyRequest,
    DiagnoseRequest,
    HealthRequest,
    RpcSweepRequest,
    LogsRequest,
    StoreContractsRequest,
    DeploymentInfoRequest,
]


def _chain(body: Mapping[str, Any], *, required: bool = True) -> Optional[str]:
    raw = body.get("chain")
    if raw is None or not str(raw).strip():
        if required:
            raise InvalidRequest("missing required field: chain")
        return None
    if not isinstance(raw, str):
        raise InvalidRequest("chain must be a string")
    return raw.strip().lower()


def _rpc_url(body: Mapping[str, Any]) -> Optional[str]:
    raw = body.get("rpcUrl")
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise InvalidRequest("rpcUrl must be a string")
    return raw.strip() or None


def _fallbacks(body: Mapping[str, Any]) -> List[str]:
    raw = body.get("fallbackRpcs")
    if raw is None:
        return []
    if isinstance(raw, str):
        return [p.strip() for p in raw.replace("\n", ",").split(",") if p.strip()]
    if isinstance(raw, (list, tuple)) and all(isinstance(x, str) for x in raw):
        return [x.strip() for x in raw if x.strip()]
    raise InvalidRequest("fallbackRpcs must be a list of strings")


def _limit(body: Mapping[str, Any]) -> int:
    raw = body.get("limit", 50)
    if isinstance(raw, bool):
        raise InvalidRequest("limit must be an integer")
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise InvalidRequest("limit must be an integer") from None
    if limit < 1 or limit > MAX_LOG_LIMIT:
        raise InvalidRequest(f"limit must be between 1 and {MAX_LOG_LIMIT}")
    return limit


def _contracts(body: Mapping[str, Any]) -> Dict[str, str]:
    raw = body.get("contracts")
    if not isinstance(raw, dict) or not raw:
        raise InvalidRequest("contracts must be a non-empty object of name -> address")
    out: Dict[str, str] = {}
    for name, addr in raw.items():
        if not isinstance(addr, str) or not is_address(addr):
            raise InvalidRequest(f"invalid address for {name}")
        out[str(name)] = to_checksum_address(addr)
    return out


def parse_request(body: Any) -> Request:
    """Validate an operation body and turn it into a request variant."""

    if not isinstance(body, dict):
        raise InvalidRequest("request body must be a JSON object")
    leaked = [k for k in FORBIDDEN_FIELDS if k in body]
    if leaked:
        raise InvalidRequest("signing keys are read from the environment and must not be sent in the request")

    op = body.get("operation") or body.get("action")
    if not isinstance(op, str) or not op.strip():
        raise InvalidRequest("missing required field: operation")
    op = op.strip()

    if op == "deploy":
        return DeployRequest(chain=_chain(body), rpc_url=_rpc_url(body), fallback_rpcs=_fallbacks(body))
    if op == "get_addresses":
        return AddressesRequest(chain=_chain(body))
    if op == "get_status":
        return StatusRequest()
    if op == "verify":
        return VerifyRequest(chain=_chain(body))
    if op == "diagnose":
        return DiagnoseRequest(chain=_chain(body))
    if op == "health_check":
        return HealthRequest()
    if op == "test_rpcs":
        return RpcSweepRequest(chain=_chain(body), rpc_url=_rpc_url(body), fallback_rpcs=_fallbacks(body))
    if op == "get_logs":
        return LogsRequest(chain=_chain(body), limit=_limit(body))
    if op == "store_contracts":
        deployer = body.get("deployer")
        if deployer is not None and (not isinstance(deployer, str) or not is_address(deployer)):
            raise InvalidRequest("deployer must be an address")
        return StoreContractsRequest(
            chain=_chain(body),
            contracts=_contracts(body),
            deployer=to_checksum_address(deployer) if deployer else None,
        )
    if op == "get_deployment_info":
        return DeploymentInfoRequest(chain=_chain(body, required=False))
    raise InvalidRequest(f"Invalid operation: {op}")


class OperationRouter:
    """Maps an operation body to its flow and always answers with a JSON-able dict."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[DeploymentStore] = None,
        log: Optional[DeploymentLog] = None,
        client_factory: Optional[ClientFactory] = None,
        chains_dir: Optional[Path] = None,
        plan: Sequence[PlanEntry] = DEFAULT_PLAN,
    ):
        self.settings = settings
        self.store = store if store is not None else JsonFileDeploymentStore(settings.store_path)
        self.log = log if log is not None else DeploymentLog(settings.log_path)
        self.client_factory = client_factory
        self.chains_dir = chains_dir
        self.plan = tuple(plan)

    async def handle(self, body: Any) -> Dict[str, Any]:
        METRICS.inc("operations_total", 1)
        try:
            request = parse_request(body)
            METRICS.inc_reason("operations_by_name", type(request).__name__, 1)
            return await self.dispatch(request)
        except DeployerError as exc:
            METRICS.inc_reason("operation_errors_by_code", exc.code, 1)
            return exc.to_dict()
        except Exception as exc:
            LOGGER.exception("unhandled error in operation")
            METRICS.inc_reason("operation_errors_by_code", "internal_error", 1)
            return {"success": False, "error": "internal_error", "details": f"{type(exc).__name__}: {exc}"[:300]}

    async def dispatch(self, request: Request) -> Dict[str, Any]:
        if isinstance(request, DeployRequest):
            return await self._deploy(request)
        if isinstance(request, AddressesRequest):
            return self._addresses(request)
        if isinstance(request, StatusRequest):
            return {"success": True, "deployments": self.store.list_all()}
        if isinstance(request, VerifyRequest):
            return self._verify(request)
        if isinstance(request, DiagnoseRequest):
            return await diagnose(
                request.chain, self.settings, client_factory=self.client_factory, chains_dir=self.chains_dir
            )
        if isinstance(request, HealthRequest):
            return self._health()
        if isinstance(request, RpcSweepRequest):
            return await sweep_endpoints(
                request.chain,
                self.settings,
                rpc_url=request.rpc_url,
                fallback_rpcs=request.fallback_rpcs,
                client_factory=self.client_factory,
                chains_dir=self.chains_dir,
                log=self.log,
            )
        if isinstance(request, LogsRequest):
            return {
                "success": True,
                "chain": request.chain,
                "logs": self.log.tail(chain=request.chain, limit=request.limit),
            }
        if isinstance(request, StoreContractsRequest):
            return self._store_contracts(request)
        if isinstance(request, DeploymentInfoRequest):
            return self._deployment_info(request)
        raise InvalidRequest(f"unsupported request {type(request).__name__}")

    async def _deploy(self, request: DeployRequest) -> Dict[str, Any]:
        orchestrator = DeploymentOrchestrator(
            self.settings,
            self.store,
            log=self.log,
            client_factory=self.client_factory,
            plan=self.plan,
            chains_dir=self.chains_dir,
        )
        outcome = await orchestrator.run(
            request.chain, rpc_url=request.rpc_url, fallback_rpcs=request.fallback_rpcs
        )
        return outcome.to_dict()

    def _addresses(self, request: AddressesRequest) -> Dict[str, Any]:
        record = self.store.get(request.chain)
        return {
            "success": True,
            "chain": record.chain,
            "addresses": [{"name": n, "address": a} for n, a in record.contract_addresses.items()],
            "deployer": record.deployer_address,
            "deployedAt": record.deployed_at,
            "verified": record.verified,
        }

    def _verify(self, request: VerifyRequest) -> Dict[str, Any]:
        record = self.store.mark_verified(request.chain)
        self._event(record.chain, "verified", "success", "deployment marked as verified")
        return {
            "success": True,
            "chain": record.chain,
            "verified": record.verified,
            "message": f"Contracts on {record.chain} marked as verified",
        }

    def _health(self) -> Dict[str, Any]:
        return {
            "success": True,
            "status": "healthy",
            "timestamp": int(time.time() * 1000),
            "secretsConfigured": self.settings.secrets_present(),
            "deploymentChains": list(self.settings.deployment_chains),
            "metrics": METRICS.snapshot(),
        }

    def _deployer_address(self) -> Optional[str]:
        if not self.settings.deployer_key:
            return None
        try:
            return DeployerAccount.from_secret(self.settings.deployer_key).address
        except ConfigError:
            return None

    def _store_contracts(self, request: StoreContractsRequest) -> Dict[str, Any]:
        if not self.settings.is_deployable(request.chain):
            raise ChainNotAllowed(request.chain, list(self.settings.deployment_chains))
        missing = [e.name for e in self.plan if e.name not in request.contracts]
        if missing:
            raise InvalidRequest(f"missing addresses for: {', '.join(missing)}")
        deployer = request.deployer or self._deployer_address() or ""
        record = DeploymentRecord(
            chain=request.chain,
            contract_addresses={e.name: request.contracts[e.name] for e in self.plan},
            deployer_address=deployer,
            metadata={"source": "manual"},
        )
        self.store.upsert(record)
        self._event(
            request.chain,
            "contracts_stored",
            "success",
            f"stored {len(record.contract_addresses)} contract addresses",
            {"contracts": record.contract_addresses},
        )
        return {"success": True, "record": record.to_dict()}

    def _deployment_info(self, request: DeploymentInfoRequest) -> Dict[str, Any]:
        chain = request.chain or (self.settings.deployment_chains[0] if self.settings.deployment_chains else "")
        chain_cfg = chain_or_default(chain, base_dir=self.chains_dir)
        try:
            rpcs = [e.label for e in build_endpoint_pool(chain_cfg, self.settings.provider_keys)]
        except ConfigError:
            rpcs = []
        return {
            "success": True,
            "chain": chain,
            "networkId": chain_cfg.chain_id,
            "deployable": self.settings.is_deployable(chain),
            "deployer": self._deployer_address(),
            "availableRpcs": rpcs,
            "plan": [{"name": e.name, "artifact": e.artifact, "dependsOn": e.depends_on} for e in self.plan],
            "minimumBalance": str(chain_cfg.min_balance_wei),
        }

    def _event(
        self, chain: str, operation: str, status: str, message: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            self.log.append(chain=chain, operation=operation, status=status, message=message, metadata=metadata)
        except OSError as exc:
            LOGGER.warning("deployment log write failed: %s", exc)
