# deployer/config.py
# NOTE:
# Never hardcode the deployer key here. It is read from DEPLOYMENT_PRIVATE_KEY
# at startup and must never be accepted from a request body.

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Authenticated RPC providers, most preferred first. Values are env var names.
PROVIDER_KEY_ENV = {
    "infura": "INFURA_API_KEY",
    "alchemy": "ALCHEMY_API_KEY",
    "ankr": "ANKR_API_KEY",
}

DEPLOYER_KEY_ENV = "DEPLOYMENT_PRIVATE_KEY"

# Only these chains may receive deployments unless DEPLOYMENT_CHAINS overrides.
DEPLOYMENT_CHAINS = ("ethereum",)

# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 1.0
RPC_TIMEOUT_MAX_S = 30.0
RPC_DEFAULT_TIMEOUT_S = 10.0
RPC_RETRY_COUNT = 0
RPC_BACKOFF_BASE_S = 0.35
RPC_RATE_LIMIT_BACKOFF_S = 0.35

# Liveness probe (eth_blockNumber) timeout.
RPC_PROBE_TIMEOUT_S = 8.0

# Receipt wait: deadline and poll interval.
RECEIPT_TIMEOUT_S = 180.0
RECEIPT_POLL_S = 2.0

# Gas limit = estimate * (1 + GAS_BUFFER_BPS / 10000). 2000 bps == +20%.
GAS_BUFFER_BPS = 2000

# Per-chain lease TTL. A crashed run blocks the chain for at most this long.
LEASE_TTL_S = 900.0

# Diagnostics probe the first N candidates, N at a time.
DIAGNOSTIC_SAMPLE_SIZE = 5
DIAGNOSTIC_CONCURRENCY = 3

LOG_LEVEL = "INFO"


def _split_csv(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(p.strip().lower() for p in str(raw).replace("\n", ",").split(",") if p.strip())


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


@dataclass(frozen=True)
class Settings:
    """Everything the orchestrator needs from its environment.

    ``provider_keys`` preserves PROVIDER_KEY_ENV order and only holds providers
    with a non-empty key.
    """

    provider_keys: Dict[str, str] = field(default_factory=dict)
    deployer_key: Optional[str] = None
    store_path: Path = PROJECT_ROOT / "state" / "deployments.json"
    state_dir: Path = PROJECT_ROOT / "state"
    artifacts_dir: Path = PROJECT_ROOT / "deploy" / "artifacts"
    deployment_chains: Tuple[str, ...] = DEPLOYMENT_CHAINS
    rpc_timeout_s: float = RPC_DEFAULT_TIMEOUT_S
    rpc_retry_count: int = RPC_RETRY_COUNT
    probe_timeout_s: float = RPC_PROBE_TIMEOUT_S
    receipt_timeout_s: float = RECEIPT_TIMEOUT_S
    receipt_poll_s: float = RECEIPT_POLL_S
    gas_buffer_bps: int = GAS_BUFFER_BPS
    lease_ttl_s: float = LEASE_TTL_S
    diagnostic_sample_size: int = DIAGNOSTIC_SAMPLE_SIZE
    diagnostic_concurrency: int = DIAGNOSTIC_CONCURRENCY
    log_level: str = LOG_LEVEL

    @property
    def lock_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "deployment_log.jsonl"

    def is_deployable(self, chain: str) -> bool:
        return str(chain or "").strip().lower() in self.deployment_chains

    def secrets_present(self) -> Dict[str, bool]:
        """Presence of every secret by env var name. Values are never exposed."""
        out = {env_name: provider in self.provider_keys for provider, env_name in PROVIDER_KEY_ENV.items()}
        out[DEPLOYER_KEY_ENV] = bool(self.deployer_key)
        return out


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    if env is None:
        env = os.environ

    keys: Dict[str, str] = {}
    for provider, env_name in PROVIDER_KEY_ENV.items():
        val = str(env.get(env_name) or "").strip()
        if val:
            keys[provider] = val

    state_dir = Path(env.get("DEPLOY_STATE_DIR") or (PROJECT_ROOT / "state"))
    store_path = Path(env.get("DEPLOY_STORE_PATH") or (state_dir / "deployments.json"))
    artifacts_dir = Path(env.get("DEPLOY_ARTIFACTS_DIR") or (PROJECT_ROOT / "deploy" / "artifacts"))
    chains = _split_csv(env.get("DEPLOYMENT_CHAINS")) or DEPLOYMENT_CHAINS

    return Settings(
        provider_keys=keys,
        deployer_key=str(env.get(DEPLOYER_KEY_ENV) or "").strip() or None,
        store_path=store_path,
        state_dir=state_dir,
        artifacts_dir=artifacts_dir,
        deployment_chains=chains,
        rpc_timeout_s=_env_float(env, "RPC_TIMEOUT_S", RPC_DEFAULT_TIMEOUT_S),
        rpc_retry_count=_env_int(env, "RPC_RETRY_COUNT", RPC_RETRY_COUNT),
        probe_timeout_s=_env_float(env, "RPC_PROBE_TIMEOUT_S", RPC_PROBE_TIMEOUT_S),
        receipt_timeout_s=_env_float(env, "RECEIPT_TIMEOUT_S", RECEIPT_TIMEOUT_S),
        receipt_poll_s=_env_float(env, "RECEIPT_POLL_S", RECEIPT_POLL_S),
        gas_buffer_bps=_env_int(env, "GAS_BUFFER_BPS", GAS_BUFFER_BPS),
        lease_ttl_s=_env_float(env, "LEASE_TTL_S", LEASE_TTL_S),
        diagnostic_sample_size=_env_int(env, "DIAGNOSTIC_SAMPLE_SIZE", DIAGNOSTIC_SAMPLE_SIZE),
        diagnostic_concurrency=_env_int(env, "DIAGNOSTIC_CONCURRENCY", DIAGNOSTIC_CONCURRENCY),
        log_level=str(env.get("LOG_LEVEL") or LOG_LEVEL).upper(),
    )
