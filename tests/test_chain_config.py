from pathlib import Path

from deployer.chain_config import DEFAULT_MIN_BALANCE_WEI, chain_or_default, load_chain_config
from deployer.config import load_settings


def test_load_chain_config_ethereum() -> None:
    cfg = load_chain_config("ethereum")
    assert cfg is not None
    assert cfg.chain_id == 1
    assert cfg.min_balance_wei == 5 * 10**16
    assert cfg.provider_url("infura", "abc") == "https://mainnet.infura.io/v3/abc"
    assert cfg.rpc_urls


def test_load_chain_config_sepolia() -> None:
    cfg = load_chain_config("Sepolia")
    assert cfg is not None
    assert cfg.chain_id == 11155111


def test_unknown_chain_has_no_registry_entry(tmp_path: Path) -> None:
    assert load_chain_config("nowhere", base_dir=tmp_path) is None
    assert load_chain_config("../ethereum") is None
    cfg = chain_or_default("Nowhere", base_dir=tmp_path)
    assert cfg.name == "nowhere"
    assert cfg.chain_id is None
    assert cfg.rpc_urls == []
    assert cfg.min_balance_wei == DEFAULT_MIN_BALANCE_WEI


def test_provider_without_template_or_key() -> None:
    cfg = load_chain_config("base")
    assert cfg is not None
    assert cfg.provider_url("infura", "abc") is None
    assert cfg.provider_url("alchemy", "") is None


def test_load_settings_from_env(tmp_path: Path) -> None:
    env = {
        "ALCHEMY_API_KEY": "k2",
        "INFURA_API_KEY": " k1 ",
        "ANKR_API_KEY": "",
        "DEPLOYMENT_PRIVATE_KEY": "0xabc",
        "DEPLOY_STATE_DIR": str(tmp_path),
        "DEPLOYMENT_CHAINS": "Ethereum, sepolia",
        "GAS_BUFFER_BPS": "1500",
        "RECEIPT_TIMEOUT_S": "not-a-number",
    }
    s = load_settings(env)
    assert list(s.provider_keys) == ["infura", "alchemy"]
    assert s.provider_keys["infura"] == "k1"
    assert s.deployment_chains == ("ethereum", "sepolia")
    assert s.gas_buffer_bps == 1500
    assert s.receipt_timeout_s == 180.0
    assert s.store_path == tmp_path / "deployments.json"
    assert s.lock_dir == tmp_path / "locks"
    assert s.is_deployable("SEPOLIA")
    assert s.secrets_present() == {
        "INFURA_API_KEY": True,
        "ALCHEMY_API_KEY": True,
        "ANKR_API_KEY": False,
        "DEPLOYMENT_PRIVATE_KEY": True,
    }


def test_load_settings_defaults() -> None:
    s = load_settings({})
    assert s.deployer_key is None
    assert s.deployment_chains == ("ethereum",)
    assert s.probe_timeout_s == 8.0
    assert s.gas_buffer_bps == 2000
    assert s.lease_ttl_s == 900.0
