from pathlib import Path

import pytest
from eth_abi import decode as abi_decode

from deployer.artifacts import (
    DEFAULT_PLAN,
    INITIAL_SUPPLY,
    AddressRef,
    PlanEntry,
    creation_data,
    load_artifact,
    load_plan,
    order_plan,
    resolve_args,
)
from deployer.errors import ConfigError, DependencyUnresolved

from conftest import TOKEN_ABI, write_artifact


def test_default_plan_tokens_then_pool() -> None:
    ordered = order_plan(DEFAULT_PLAN)
    assert [e.name for e in ordered] == ["USDC", "USDT", "DAI", "LendingPool"]
    assert ordered[-1].depends_on == ["USDC", "USDT", "DAI"]


def test_order_plan_puts_dependents_after_their_dependencies() -> None:
    plan = [
        PlanEntry("Router", "Router", (AddressRef("Pool"),)),
        PlanEntry("Pool", "Pool", (AddressRef("A"),)),
        PlanEntry("A", "Token"),
    ]
    assert [e.name for e in order_plan(plan)] == ["A", "Pool", "Router"]


@pytest.mark.parametrize(
    "plan",
    [
        [PlanEntry("A", "T"), PlanEntry("A", "T")],
        [PlanEntry("A", "T", (AddressRef("B"),))],
        [PlanEntry("A", "T", (AddressRef("A"),))],
        [PlanEntry("A", "T", (AddressRef("B"),)), PlanEntry("B", "T", (AddressRef("A"),))],
    ],
    ids=["duplicate", "undeclared", "self", "cycle"],
)
def test_order_plan_rejects_bad_graphs(plan) -> None:
    with pytest.raises(ConfigError):
        order_plan(plan)


def test_load_plan_reads_artifacts(artifacts_dir: Path) -> None:
    artifacts = load_plan(DEFAULT_PLAN, artifacts_dir)
    assert [a.name for a in artifacts] == ["USDC", "USDT", "DAI", "LendingPool"]
    assert artifacts[0].constructor_types() == ["string", "string", "uint256"]
    assert artifacts[0].constructor_args == ("USD Coin", "USDC", INITIAL_SUPPLY)
    assert artifacts[3].depends_on == ["USDC", "USDT", "DAI"]
    assert artifacts[0].source.endswith("ERC20TestToken.json")


def test_missing_artifact_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as info:
        load_plan(DEFAULT_PLAN, tmp_path / "empty")
    assert "ERC20TestToken" in str(info.value)


def test_foundry_layout_and_nested_bytecode(tmp_path: Path) -> None:
    artifacts_dir = tmp_path / "deploy" / "artifacts"
    out = tmp_path / "out" / "ERC20TestToken.sol" / "ERC20TestToken.json"
    out.parent.mkdir(parents=True)
    out.write_text('{"abi": [], "bytecode": {"object": "6080"}}', encoding="utf-8")
    data, path = load_artifact(artifacts_dir, "ERC20TestToken")
    assert data["bytecode"] == "0x6080"
    assert path == str(out)


def test_artifact_without_bytecode_is_rejected(tmp_path: Path) -> None:
    write_artifact(tmp_path, "Empty", TOKEN_ABI, bytecode="0x")
    with pytest.raises(ConfigError):
        load_artifact(tmp_path, "Empty")


def test_arg_count_mismatch_is_rejected(artifacts_dir: Path) -> None:
    plan = [PlanEntry("USDC", "ERC20TestToken", ("USD Coin", "USDC"))]
    with pytest.raises(ConfigError):
        load_plan(plan, artifacts_dir)


def test_resolve_args_and_creation_data(artifacts_dir: Path) -> None:
    pool = load_plan(DEFAULT_PLAN, artifacts_dir)[3]
    addresses = {
        "USDC": "0x" + "11" * 20,
        "USDT": "0x" + "22" * 20,
    }
    with pytest.raises(DependencyUnresolved) as info:
        resolve_args(pool, addresses)
    assert info.value.reference == "DAI"

    addresses["DAI"] = "0x" + "33" * 20
    args = resolve_args(pool, addresses)
    data = creation_data(pool, args)
    assert data.startswith(pool.bytecode)
    decoded = abi_decode(["address", "address", "address"], bytes.fromhex(data[len(pool.bytecode):]))
    assert [d.lower() for d in decoded] == [addresses["USDC"], addresses["USDT"], addresses["DAI"]]


def test_custom_artifacts_dir_only_searches_itself(tmp_path: Path) -> None:
    custom = tmp_path / "art"
    stray = tmp_path / "out" / "ERC20TestToken.sol" / "ERC20TestToken.json"
    stray.parent.mkdir(parents=True)
    stray.write_text('{"abi": [], "bytecode": {"object": "6080"}}', encoding="utf-8")
    with pytest.raises(ConfigError):
        load_artifact(custom, "ERC20TestToken")

    write_artifact(custom, "ERC20TestToken", TOKEN_ABI)
    _, path = load_artifact(custom, "ERC20TestToken")
    assert path == str(custom / "ERC20TestToken.json")
