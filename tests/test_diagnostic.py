import asyncio
from pathlib import Path

import pytest

from deployer import diagnostic
from deployer.store import DeploymentLog
from infra.endpoints import RpcEndpoint

from conftest import ONE_ETH, FakeNode, NodeFactory, write_chain

PUBLIC_1 = "https://public-1.example"
PUBLIC_2 = "https://public-2.example"


@pytest.mark.asyncio
async def test_fully_healthy(make_settings, chains_dir: Path) -> None:
    settings = make_settings(provider_keys={"infura": "k1"})
    factory = NodeFactory({"https://infura.example/v3/k1": FakeNode(balance=ONE_ETH)})

    report = await diagnostic.diagnose("ethereum", settings, client_factory=factory, chains_dir=chains_dir)

    assert report["healthScore"] == 100
    assert report["recommendations"] == []
    assert report["deployerBalance"] == str(ONE_ETH)
    assert report["secretsPresent"]["INFURA_API_KEY"] is True
    assert "infura:https://infura.example/..." in report["endpointTests"]
    assert "k1" not in str(report["endpointTests"])


@pytest.mark.asyncio
async def test_missing_signing_key_caps_score(make_settings, chains_dir: Path) -> None:
    settings = make_settings(deployer_key=None, provider_keys={"infura": "k1"})
    factory = NodeFactory({PUBLIC_1: FakeNode()})

    report = await diagnostic.diagnose("ethereum", settings, client_factory=factory, chains_dir=chains_dir)

    assert report["healthScore"] <= 75
    assert report["checks"]["signingKey"] is False
    assert report["deployerAddress"] is None
    assert report["deployerBalance"] is None
    assert any("DEPLOYMENT_PRIVATE_KEY" in r for r in report["recommendations"])


@pytest.mark.asyncio
async def test_checks_do_not_short_circuit(make_settings, chains_dir: Path) -> None:
    settings = make_settings()
    report = await diagnostic.diagnose("ethereum", settings, client_factory=NodeFactory(), chains_dir=chains_dir)

    # No endpoint reachable, but the key is still checked and the address derived.
    assert report["checks"] == {
        "signingKey": True,
        "providerKey": False,
        "endpointReachable": False,
        "balanceSufficient": False,
    }
    assert report["healthScore"] == 25
    assert report["deployerAddress"].startswith("0x")
    assert all(not t["ok"] for t in report["endpointTests"].values())
    assert diagnostic.REC_NO_ENDPOINT in report["recommendations"]
    assert diagnostic.REC_PROVIDER_KEY in report["recommendations"]


@pytest.mark.asyncio
async def test_underfunded_deployer_gets_funding_hint(make_settings, chains_dir: Path) -> None:
    settings = make_settings()
    factory = NodeFactory({PUBLIC_1: FakeNode(balance=1)})
    report = await diagnostic.diagnose("ethereum", settings, client_factory=factory, chains_dir=chains_dir)
    assert report["checks"]["balanceSufficient"] is False
    assert report["healthScore"] == 50
    assert any(r.startswith("Fund deployer wallet 0x") and "0.05 ETH" in r for r in report["recommendations"])


@pytest.mark.asyncio
async def test_sample_is_bounded(make_settings, tmp_path: Path) -> None:
    chains = tmp_path / "many"
    write_chain(chains, "ethereum", rpc_urls=[f"https://rpc-{i}.example" for i in range(10)])
    settings = make_settings(diagnostic_sample_size=3)
    factory = NodeFactory()

    report = await diagnostic.diagnose("ethereum", settings, client_factory=factory, chains_dir=chains)

    assert len(report["endpointTests"]) == 3
    assert factory.requested == ["https://rpc-0.example", "https://rpc-1.example", "https://rpc-2.example"]
    assert all(node.closed for node in factory.nodes.values())


@pytest.mark.asyncio
async def test_probe_many_respects_concurrency() -> None:
    in_flight = 0
    peak = 0

    class SlowNode(FakeNode):
        async def call(self, method, params, timeout_s=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await super().call(method, params, timeout_s=timeout_s)

    endpoints = [
        RpcEndpoint(url=f"https://n{i}.example", authenticated=False, source_rank=i, source="fallback")
        for i in range(6)
    ]
    probed = await diagnostic.probe_many(endpoints, lambda e: SlowNode(), timeout_s=1.0, concurrency=2)

    assert peak == 2
    assert [e.url for e, _, _ in probed] == [e.url for e in endpoints]
    assert all(r.ok for _, _, r in probed)


@pytest.mark.asyncio
async def test_sweep_endpoints_summary_and_log(make_settings, chains_dir: Path) -> None:
    settings = make_settings()
    log = DeploymentLog(settings.log_path)
    factory = NodeFactory({PUBLIC_2: FakeNode()})

    out = await diagnostic.sweep_endpoints(
        "ethereum",
        settings,
        fallback_rpcs=["https://extra.example"],
        client_factory=factory,
        chains_dir=chains_dir,
        log=log,
    )

    assert out["total_rpcs"] == 3
    assert out["working_rpcs"] == 1
    assert out["failed_rpcs"] == 2
    assert out["rpc_tests"][PUBLIC_2]["ok"] is True
    assert out["rpc_tests"]["https://extra.example"]["reason"] == "timeout"
    entry = log.tail(chain="ethereum")[0]
    assert entry["operation"] == "rpc_test"
    assert entry["message"] == "1/3 endpoints working"
