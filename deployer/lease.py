from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

LOGGER = logging.getLogger("deployer.lease")


def is_pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True
    except OSError:
        return False


def lease_path(lock_dir: Path, chain: str) -> Path:
    safe = re.sub(r"[^a-z0-9_.-]", "_", str(chain or "").strip().lower()) or "_"
    return Path(lock_dir) / f"{safe}.lock"


class ChainLease:
    """Exclusive, expiring lease on one chain.

    The lease file is created atomically. It blocks every other ``run_id``,
    including runs in this same process, until it is released, it expires, or
    its owning process dies.
    """

    def __init__(self, path: Path, *, ttl_s: float) -> None:
        self.path = Path(path)
        self.ttl_s = float(ttl_s)

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            if not self.path.exists():
                return None
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                return raw
        except (OSError, ValueError):
            return None
        return None

    def _create(self, payload: Dict[str, Any]) -> None:
        fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        try:
            os.write(fd, json.dumps(payload).encode("utf-8"))
        finally:
            os.close(fd)

    def _payload(self, run_id: str, pid: int, now_ms: int) -> Dict[str, Any]:
        return {
            "pid": pid,
            "run_id": str(run_id),
            "started_at_ms": now_ms,
            "expires_at_ms": now_ms + int(self.ttl_s * 1000),
        }

    def is_stale(self, existing: Dict[str, Any], *, now_ms: Optional[int] = None) -> bool:
        now = int(now_ms if now_ms is not None else time.time() * 1000)
        expires = int(existing.get("expires_at_ms") or 0)
        if expires and now >= expires:
            return True
        pid = int(existing.get("pid") or 0)
        return not is_pid_alive(pid)

    def acquire(
        self,
        *,
        run_id: str,
        pid: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> Tuple[bool, Optional[str], Optional[Dict[str, Any]]]:
        if pid is None:
            pid = os.getpid()
        pid = int(pid)
        now = int(now_ms if now_ms is not None else time.time() * 1000)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Fast path: atomic create
        try:
            payload = self._payload(run_id, pid, now)
            self._create(payload)
            return True, None, payload
        except FileExistsError:
            pass
        except OSError as exc:
            return False, f"lock_error:{exc}", None

        existing = self._read() or {}
        if str(existing.get("run_id") or "") == str(run_id):
            return True, None, existing
        if existing and not self.is_stale(existing, now_ms=now):
            return False, "already_running", existing

        # Stale or unreadable lease: replace
        LOGGER.warning("recovering stale lease %s held by %s", self.path.name, existing.get("run_id"))
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            pass
        try:
            payload = self._payload(run_id, pid, now)
            payload["recovered"] = True
            self._create(payload)
            return True, None, payload
        except FileExistsError:
            return False, "already_running", self._read()
        except OSError as exc:
            return False, f"lock_error:{exc}", None

    def refresh(self, *, run_id: str, now_ms: Optional[int] = None) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Push ``expires_at_ms`` a full TTL past ``now`` while ``run_id`` still owns the lease."""
        existing = self._read()
        if not existing or str(existing.get("run_id") or "") != str(run_id):
            return False, existing
        now = int(now_ms if now_ms is not None else time.time() * 1000)
        payload = dict(existing)
        payload["expires_at_ms"] = now + int(self.ttl_s * 1000)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            LOGGER.warning("lease refresh failed for %s: %s", self.path.name, exc)
            tmp.unlink(missing_ok=True)
            return False, existing
        return True, payload

    def release(self, *, run_id: str) -> bool:
        existing = self._read()
        if not existing:
            return True
        if str(existing.get("run_id") or "") != str(run_id):
            return False
        try:
            self.path.unlink(missing_ok=True)
            return True
        except OSError:
            return False
