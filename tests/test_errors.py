from deployer.errors import (
    ChainNotAllowed,
    ConfigError,
    DeployError,
    DeployerError,
    InsufficientBalance,
    MultiEndpointFailure,
    RecordNotFound,
    StoreError,
)


def test_builtin_bases() -> None:
    assert isinstance(ConfigError("x"), ValueError)
    assert isinstance(ChainNotAllowed("x", []), ValueError)
    assert isinstance(RecordNotFound("x"), LookupError)
    assert isinstance(DeployError("A", "x"), RuntimeError)
    assert isinstance(MultiEndpointFailure("x", []), ConnectionError)
    assert all(
        isinstance(e, DeployerError)
        for e in (ConfigError("x"), StoreError("x"), InsufficientBalance("c", "0x1", 1, 2))
    )


def test_insufficient_balance_payload() -> None:
    payload = InsufficientBalance("ethereum", "0xabc", 10, 25).to_dict()
    assert payload["success"] is False
    assert payload["code"] == "insufficient_balance"
    assert payload["deployer"] == "0xabc"
    assert (payload["current"], payload["required"], payload["shortfall"]) == ("10", "25", "15")
    assert "partial" not in payload


def test_deploy_error_always_reports_partial() -> None:
    payload = DeployError("LendingPool", "transaction reverted", tx_hash="0xdead").to_dict()
    assert payload["partial"] == {}
    assert payload["transactionHash"] == "0xdead"

    err = DeployError("LendingPool", "x").with_partial({"USDC": "0x1"})
    assert err.to_dict()["partial"] == {"USDC": "0x1"}


def test_with_partial_on_any_error() -> None:
    err = ConfigError("bad").with_partial({"USDC": "0x1"})
    assert err.to_dict()["partial"] == {"USDC": "0x1"}
    # Class-level default is never mutated.
    assert ConfigError("other").to_dict().get("partial") is None


def test_chain_not_allowed_lists_allow_list() -> None:
    payload = ChainNotAllowed("polygon", ["ethereum"]).to_dict()
    assert payload["allowed"] == ["ethereum"]
    assert "polygon" in payload["error"]


def test_partial_is_per_instance() -> None:
    first = ConfigError("a").with_partial({"USDC": "0x1"})
    second = ConfigError("b")
    assert DeployerError.partial is None
    assert second.partial is None
    assert first.partial == {"USDC": "0x1"}
    assert "partial" not in second.to_dict()
