from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from eth_abi import encode as abi_encode

from deployer.errors import ConfigError, DependencyUnresolved


@dataclass(frozen=True)
class AddressRef:
    """Constructor argument placeholder for ``addresses[name]``."""

    name: str


@dataclass(frozen=True)
class PlanEntry:
    """One contract to deploy: instance name, compiled artifact name, args."""

    name: str
    artifact: str
    constructor_args: Tuple[Any, ...] = ()

    @property
    def depends_on(self) -> List[str]:
        return [a.name for a in self.constructor_args if isinstance(a, AddressRef)]


@dataclass(frozen=True)
class ContractArtifact:
    name: str
    bytecode: str
    abi: List[Dict[str, Any]]
    constructor_args: Tuple[Any, ...] = ()
    source: Optional[str] = None

    @property
    def depends_on(self) -> List[str]:
        return [a.name for a in self.constructor_args if isinstance(a, AddressRef)]

    def constructor_types(self) -> List[str]:
        for item in self.abi:
            if isinstance(item, dict) and item.get("type") == "constructor":
                return [str(i.get("type")) for i in (item.get("inputs") or [])]
        return []


@dataclass(frozen=True)
class DeploymentResult:
    name: str
    address: str
    transaction_hash: str
    gas_used: int
    block_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "transactionHash": self.transaction_hash,
            "gasUsed": self.gas_used,
            "blockNumber": self.block_number,
        }


INITIAL_SUPPLY = 1_000_000 * 10**18

DEFAULT_PLAN: Tuple[PlanEntry, ...] = (
    PlanEntry("USDC", "ERC20TestToken", ("USD Coin", "USDC", INITIAL_SUPPLY)),
    PlanEntry("USDT", "ERC20TestToken", ("Tether USD", "USDT", INITIAL_SUPPLY)),
    PlanEntry("DAI", "ERC20TestToken", ("Dai Stablecoin", "DAI", INITIAL_SUPPLY)),
    PlanEntry("LendingPool", "LendingPool", (AddressRef("USDC"), AddressRef("USDT"), AddressRef("DAI"))),
)


def _artifact_candidates(artifacts_dir: Path, artifact: str) -> List[Path]:
    root = Path(artifacts_dir)
    candidates = [root / f"{artifact}.json"]
    # Compiler output is only looked up beside a <project>/deploy/artifacts directory.
    if root.name == "artifacts" and root.parent.name == "deploy":
        project = root.parent.parent
        candidates.append(project / "out" / f"{artifact}.sol" / f"{artifact}.json")
        candidates.append(project / "artifacts" / "contracts" / f"{artifact}.sol" / f"{artifact}.json")
    return candidates


def _bytecode_of(data: Dict[str, Any]) -> Optional[str]:
    raw = data.get("bytecode")
    # Foundry nests it: {"bytecode": {"object": "0x..."}}
    if isinstance(raw, dict):
        raw = raw.get("object")
    if not raw or not isinstance(raw, str):
        return None
    return raw if raw.startswith("0x") else "0x" + raw


def load_artifact(artifacts_dir: Path, artifact: str) -> Tuple[Dict[str, Any], str]:
    """Return (abi/bytecode dict, path) for a compiled artifact."""
    for path in _artifact_candidates(artifacts_dir, artifact):
        if not path.exists():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"unreadable artifact {path}: {exc}") from exc
        abi = data.get("abi")
        bytecode = _bytecode_of(data)
        if not isinstance(abi, list) or not bytecode or bytecode == "0x":
            raise ConfigError(f"artifact missing abi/bytecode: {path}")
        return {"abi": abi, "bytecode": bytecode}, str(path)
    raise ConfigError(f"no compiled artifact found for {artifact} (place {artifact}.json in {artifacts_dir})")


def order_plan(plan: Sequence[PlanEntry]) -> List[PlanEntry]:
    """Independents in declared order, then dependents in dependency order.

    Rejects duplicate names, references to undeclared names and cycles.
    """
    names = [e.name for e in plan]
    if len(set(names)) != len(names):
        raise ConfigError(f"duplicate contract names in plan: {names}")
    declared = set(names)
    for entry in plan:
        for dep in entry.depends_on:
            if dep not in declared:
                raise ConfigError(f"{entry.name} depends on undeclared contract {dep}")
            if dep == entry.name:
                raise ConfigError(f"{entry.name} depends on itself")

    ordered = [e for e in plan if not e.depends_on]
    placed = {e.name for e in ordered}
    pending = [e for e in plan if e.depends_on]
    while pending:
        ready = [e for e in pending if all(d in placed for d in e.depends_on)]
        if not ready:
            raise ConfigError(f"dependency cycle among {[e.name for e in pending]}")
        for e in ready:
            ordered.append(e)
            placed.add(e.name)
        pending = [e for e in pending if e.name not in placed]
    return ordered


def load_plan(plan: Sequence[PlanEntry], artifacts_dir: Path) -> List[ContractArtifact]:
    """Resolve every plan entry to a ContractArtifact, in deployment order."""
    cache: Dict[str, Tuple[Dict[str, Any], str]] = {}
    out: List[ContractArtifact] = []
    for entry in order_plan(plan):
        if entry.artifact not in cache:
            cache[entry.artifact] = load_artifact(artifacts_dir, entry.artifact)
        data, path = cache[entry.artifact]
        artifact = ContractArtifact(
            name=entry.name,
            bytecode=data["bytecode"],
            abi=data["abi"],
            constructor_args=tuple(entry.constructor_args),
            source=path,
        )
        expected = artifact.constructor_types()
        if len(expected) != len(artifact.constructor_args):
            raise ConfigError(
                f"{entry.name}: constructor takes {len(expected)} args, plan gives {len(artifact.constructor_args)}"
            )
        out.append(artifact)
    return out


def resolve_args(artifact: ContractArtifact, addresses: Mapping[str, str]) -> List[Any]:
    resolved: List[Any] = []
    for arg in artifact.constructor_args:
        if isinstance(arg, AddressRef):
            addr = addresses.get(arg.name)
            if not addr:
                raise DependencyUnresolved(artifact.name, arg.name)
            resolved.append(addr)
        else:
            resolved.append(arg)
    return resolved


def creation_data(artifact: ContractArtifact, args: Sequence[Any]) -> str:
    """Bytecode followed by the ABI-encoded constructor arguments."""
    types = artifact.constructor_types()
    if not types:
        return artifact.bytecode
    try:
        encoded = abi_encode(types, list(args))
    except Exception as exc:
        raise ConfigError(f"{artifact.name}: cannot encode constructor args {types}: {exc}") from exc
    return artifact.bytecode + encoded.hex()
