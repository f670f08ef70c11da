from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from deployer.errors import RecordNotFound, StoreError
from deployer.lease import is_pid_alive

LOGGER = logging.getLogger("deployer.store")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class DeploymentRecord:
    chain: str
    contract_addresses: Dict[str, str]
    deployer_address: str
    deployed_at: str = field(default_factory=utc_now_iso)
    verified: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "contractAddresses": dict(self.contract_addresses),
            "deployerAddress": self.deployer_address,
            "deployedAt": self.deployed_at,
            "verified": bool(self.verified),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DeploymentRecord":
        return cls(
            chain=str(raw["chain"]),
            contract_addresses={str(k): str(v) for k, v in (raw.get("contractAddresses") or {}).items()},
            deployer_address=str(raw.get("deployerAddress") or ""),
            deployed_at=str(raw.get("deployedAt") or ""),
            verified=bool(raw.get("verified")),
            metadata=dict(raw.get("metadata") or {}),
        )


class DeploymentStore:
    """Repository of one DeploymentRecord per chain."""

    def upsert(self, record: DeploymentRecord) -> None:
        raise NotImplementedError

    def get(self, chain: str) -> DeploymentRecord:
        raise NotImplementedError

    def mark_verified(self, chain: str) -> DeploymentRecord:
        raise NotImplementedError

    def list_all(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


class JsonFileDeploymentStore(DeploymentStore):
    """All records in one JSON document, replaced atomically on every write.

    Layout: ``{"deployments": {"<chain>": <record dict>}}``.

    Writers in any process serialize on ``<path>.lock`` (created with
    ``O_EXCL``) for the whole read-modify-write, so concurrent upserts of
    different chains never drop each other's records.
    """

    def __init__(self, path: Path, *, lock_timeout_s: float = 10.0, lock_poll_s: float = 0.02):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout_s = float(lock_timeout_s)
        self.lock_poll_s = float(lock_poll_s)
        self._lock = threading.Lock()

    def _holder_is_stale(self) -> bool:
        try:
            pid = int(self.lock_path.read_text(encoding="utf-8").strip() or 0)
        except FileNotFoundError:
            return False
        except (OSError, ValueError):
            pid = 0
        if pid and is_pid_alive(pid):
            return False
        # A writer that just created the file may not have written its pid yet.
        try:
            age_s = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return pid != 0 or age_s > self.lock_timeout_s

    @contextmanager
    def _write_lock(self) -> Iterator[None]:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StoreError(f"cannot write deployment store {self.path}: {exc}") from exc
            deadline = time.monotonic() + self.lock_timeout_s
            while True:
                try:
                    fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                except FileExistsError:
                    if self._holder_is_stale():
                        LOGGER.warning("removing stale store lock %s", self.lock_path)
                        self.lock_path.unlink(missing_ok=True)
                        continue
                    if time.monotonic() >= deadline:
                        raise StoreError(f"timed out waiting for store lock {self.lock_path}")
                    time.sleep(self.lock_poll_s)
                    continue
                except OSError as exc:
                    raise StoreError(f"cannot lock deployment store {self.path}: {exc}") from exc
                break
            try:
                os.write(fd, str(os.getpid()).encode("utf-8"))
            finally:
                os.close(fd)
            try:
                yield
            finally:
                self.lock_path.unlink(missing_ok=True)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(f"cannot read deployment store {self.path}: {exc}") from exc
        deployments = raw.get("deployments") if isinstance(raw, dict) else None
        return dict(deployments) if isinstance(deployments, dict) else {}

    def _save(self, deployments: Dict[str, Dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".deployments.", suffix=".tmp", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump({"deployments": deployments}, f, indent=2, sort_keys=True)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreError(f"cannot write deployment store {self.path}: {exc}") from exc

    def upsert(self, record: DeploymentRecord) -> None:
        with self._write_lock():
            deployments = self._load()
            deployments[record.chain] = record.to_dict()
            self._save(deployments)

    def get(self, chain: str) -> DeploymentRecord:
        raw = self._load().get(chain)
        if not raw:
            raise RecordNotFound(chain)
        return DeploymentRecord.from_dict(raw)

    def mark_verified(self, chain: str) -> DeploymentRecord:
        with self._write_lock():
            deployments = self._load()
            raw = deployments.get(chain)
            if not raw:
                raise RecordNotFound(chain)
            record = DeploymentRecord.from_dict(raw)
            if record.verified:
                return record
            record = replace(record, verified=True)
            deployments[chain] = record.to_dict()
            self._save(deployments)
            return record

    def list_all(self) -> List[Dict[str, Any]]:
        out = [
            {"chain": chain, "verified": bool(raw.get("verified")), "deployedAt": raw.get("deployedAt")}
            for chain, raw in self._load().items()
            if isinstance(raw, dict)
        ]
        out.sort(key=lambda r: str(r.get("deployedAt") or ""), reverse=True)
        return out


class DeploymentLog:
    """Append-only JSON-lines event log."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(
        self,
        *,
        chain: str,
        operation: str,
        status: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = {
            "ts": int(time.time() * 1000),
            "chain": chain,
            "operation": operation,
            "status": status,
            "message": message,
            "metadata": metadata or {},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, *, chain: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest first."""
        if not self.path.exists():
            return []
        out: List[Dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(obj, dict):
                    continue
                if chain is not None and obj.get("chain") != chain:
                    continue
                out.append(obj)
        out.reverse()
        return out[: max(0, int(limit))]
