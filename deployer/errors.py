"""Error taxonomy for the deployment orchestrator.

Every error knows how to render itself as the JSON payload returned to the
caller, so the router never has to inspect error internals.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DeployerError(Exception):
    """Base exception for orchestrator errors."""

    code = "deployer_error"

    # Contracts already on-chain when the error surfaced (name -> address).
    partial: Optional[Dict[str, str]] = None

    def with_partial(self, addresses: Dict[str, str]) -> "DeployerError":
        self.partial = dict(addresses)
        return self

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": False, "error": str(self), "code": self.code}
        out.update(self.details())
        if self.partial:
            out["partial"] = dict(self.partial)
        return out


class ConfigError(DeployerError, ValueError):
    """Raised when a required secret, artifact or registry entry is missing."""

    code = "config_error"


class InvalidRequest(DeployerError, ValueError):
    """Raised when an operation body fails validation."""

    code = "invalid_request"


class ChainNotAllowed(DeployerError, ValueError):
    """Raised when a deployment targets a chain outside the allow-list."""

    code = "chain_not_allowed"

    def __init__(self, chain: str, allowed: List[str]):
        super().__init__(f"Unsupported deployment chain: {chain}. Allowed: {', '.join(allowed) or 'none'}")
        self.chain = chain
        self.allowed = list(allowed)

    def details(self) -> Dict[str, Any]:
        return {"chain": self.chain, "allowed": self.allowed}


class MultiEndpointFailure(DeployerError, ConnectionError):
    """Raised when every candidate RPC endpoint failed its probe.

    ``failures`` is ordered exactly as the candidates were tried.
    """

    code = "multi_endpoint_failure"

    def __init__(self, chain: str, failures: List[Dict[str, Any]]):
        super().__init__(f"All {len(failures)} RPC endpoints failed for {chain}")
        self.chain = chain
        self.failures = list(failures)

    @property
    def tried(self) -> List[str]:
        return [str(f.get("url")) for f in self.failures]

    def details(self) -> Dict[str, Any]:
        auth = [f for f in self.failures if f.get("authenticated")]
        return {
            "chain": self.chain,
            "endpoints": self.failures,
            "authenticatedFailed": len(auth),
            "publicFailed": len(self.failures) - len(auth),
        }


class InsufficientBalance(DeployerError):
    """Raised before any submission when the deployer cannot cover the run."""

    code = "insufficient_balance"

    def __init__(self, chain: str, deployer: str, balance_wei: int, required_wei: int):
        super().__init__(
            f"Deployer {deployer} has {balance_wei} wei on {chain}, needs at least {required_wei} wei"
        )
        self.chain = chain
        self.deployer = deployer
        self.balance_wei = int(balance_wei)
        self.required_wei = int(required_wei)

    @property
    def shortfall_wei(self) -> int:
        return max(0, self.required_wei - self.balance_wei)

    def details(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "deployer": self.deployer,
            "current": str(self.balance_wei),
            "required": str(self.required_wei),
            "shortfall": str(self.shortfall_wei),
        }


class DependencyUnresolved(DeployerError):
    """An artifact referenced an address that has not been produced yet."""

    code = "dependency_unresolved"

    def __init__(self, artifact: str, reference: str):
        super().__init__(f"{artifact} references {reference}, which has not been deployed")
        self.artifact = artifact
        self.reference = reference

    def details(self) -> Dict[str, Any]:
        return {"artifact": self.artifact, "reference": self.reference}


class DeployError(DeployerError, RuntimeError):
    """A contract-creation transaction failed, reverted or timed out.

    ``partial`` lists contracts that are already on-chain and must not be
    re-deployed blindly.
    """

    code = "deploy_error"

    def __init__(
        self,
        artifact: str,
        reason: str,
        *,
        tx_hash: Optional[str] = None,
        partial: Optional[Dict[str, str]] = None,
    ):
        super().__init__(f"Deployment of {artifact} failed: {reason}")
        self.artifact = artifact
        self.reason = reason
        self.tx_hash = tx_hash
        self.partial: Dict[str, str] = dict(partial or {})

    def details(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"artifact": self.artifact, "reason": self.reason, "partial": dict(self.partial)}
        if self.tx_hash:
            out["transactionHash"] = self.tx_hash
        return out


class StoreError(DeployerError, RuntimeError):
    """Persistence failed. When raised after deployment, ``contracts`` holds live addresses."""

    code = "store_error"

    def __init__(self, message: str, *, chain: Optional[str] = None, contracts: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.chain = chain
        self.contracts: Dict[str, str] = dict(contracts or {})
        self.partial = dict(self.contracts)

    def details(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.chain:
            out["chain"] = self.chain
        if self.contracts:
            out["contracts"] = dict(self.contracts)
        return out


class RecordNotFound(DeployerError, LookupError):
    """Raised when no deployment record exists for a chain."""

    code = "not_found"

    def __init__(self, chain: str):
        super().__init__(f"No deployed contracts found for chain {chain}")
        self.chain = chain

    def details(self) -> Dict[str, Any]:
        return {"chain": self.chain}


class DeploymentInProgress(DeployerError):
    """Another run holds the per-chain lease."""

    code = "deployment_in_progress"

    def __init__(self, chain: str, holder: Optional[Dict[str, Any]] = None):
        super().__init__(f"A deployment for {chain} is already running")
        self.chain = chain
        self.holder = dict(holder or {})

    def details(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"chain": self.chain}
        if self.holder:
            out["holder"] = {k: self.holder.get(k) for k in ("run_id", "started_at_ms", "expires_at_ms")}
        return out
