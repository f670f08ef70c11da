import json
import os
import subprocess
import sys
from pathlib import Path

from deployer.lease import ChainLease, lease_path


def test_lease_exclusive(tmp_path: Path) -> None:
    path = lease_path(tmp_path, "ethereum")
    lease = ChainLease(path, ttl_s=60)

    ok, reason, payload = lease.acquire(run_id="run-a", pid=os.getpid())
    assert ok and reason is None
    assert payload and payload.get("run_id") == "run-a"

    # Same process, different run: still blocked.
    ok2, reason2, holder = lease.acquire(run_id="run-b", pid=os.getpid())
    assert not ok2
    assert reason2 == "already_running"
    assert holder and holder.get("run_id") == "run-a"


def test_lease_blocks_other_live_process(tmp_path: Path) -> None:
    path = lease_path(tmp_path, "ethereum")
    lease = ChainLease(path, ttl_s=60)
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(3)"])
    try:
        now_ms = 1_000_000
        path.write_text(
            json.dumps({"pid": proc.pid, "run_id": "other", "expires_at_ms": now_ms + 60_000}),
            encoding="utf-8",
        )
        ok, reason, _ = lease.acquire(run_id="run-b", now_ms=now_ms)
        assert not ok
        assert reason == "already_running"
    finally:
        proc.terminate()
        proc.wait(timeout=3)


def test_lease_stale_recovery_dead_pid(tmp_path: Path) -> None:
    path = lease_path(tmp_path, "ethereum")
    path.write_text(json.dumps({"pid": 9999999, "run_id": "stale"}), encoding="utf-8")
    ok, reason, payload = ChainLease(path, ttl_s=60).acquire(run_id="fresh", pid=os.getpid())
    assert ok and reason is None
    assert payload and payload.get("run_id") == "fresh"
    assert payload.get("recovered") is True


def test_lease_expires_after_ttl(tmp_path: Path) -> None:
    path = lease_path(tmp_path, "ethereum")
    lease = ChainLease(path, ttl_s=10)
    ok, _, _ = lease.acquire(run_id="run-a", now_ms=0)
    assert ok
    ok2, _, payload = lease.acquire(run_id="run-b", now_ms=10_001)
    assert ok2
    assert payload["run_id"] == "run-b"
    assert payload["expires_at_ms"] == 20_001


def test_release_only_by_owner(tmp_path: Path) -> None:
    path = lease_path(tmp_path, "ethereum")
    lease = ChainLease(path, ttl_s=60)
    lease.acquire(run_id="run-a")
    assert lease.release(run_id="run-b") is False
    assert path.exists()
    assert lease.release(run_id="run-a") is True
    assert not path.exists()
    ok, _, _ = lease.acquire(run_id="run-b")
    assert ok


def test_lease_path_is_sanitized(tmp_path: Path) -> None:
    assert lease_path(tmp_path, "../Ethereum").name == ".._ethereum.lock"


def test_refresh_extends_only_the_owners_lease(tmp_path: Path) -> None:
    path = lease_path(tmp_path, "ethereum")
    lease = ChainLease(path, ttl_s=10)
    lease.acquire(run_id="run-a", now_ms=0)

    held, payload = lease.refresh(run_id="run-a", now_ms=8_000)
    assert held and payload["expires_at_ms"] == 18_000
    ok, reason, _ = lease.acquire(run_id="run-b", now_ms=12_000)
    assert not ok and reason == "already_running"

    held, holder = lease.refresh(run_id="run-b", now_ms=12_000)
    assert not held and holder["run_id"] == "run-a"
    assert json.loads(path.read_text(encoding="utf-8"))["expires_at_ms"] == 18_000
