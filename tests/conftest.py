import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from web3 import Web3

from deployer.config import Settings
from infra.metrics import METRICS

# Well-known development key; never funded on a real network.
TEST_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

TOKEN_ABI = [
    {
        "type": "constructor",
        "inputs": [
            {"name": "name", "type": "string"},
            {"name": "symbol", "type": "string"},
            {"name": "initialSupply", "type": "uint256"},
        ],
        "stateMutability": "nonpayable",
    }
]

POOL_ABI = [
    {
        "type": "constructor",
        "inputs": [
            {"name": "usdc", "type": "address"},
            {"name": "usdt", "type": "address"},
            {"name": "dai", "type": "address"},
        ],
        "stateMutability": "nonpayable",
    }
]

ONE_ETH = 10**18


class FakeNode:
    """In-memory JSON-RPC node.

    Mines every accepted raw transaction immediately. ``revert_at`` and
    ``reject_at`` are zero-based indexes into the submitted transactions.
    """

    def __init__(
        self,
        *,
        block_number: int = 1000,
        chain_id: int = 1,
        balance: int = ONE_ETH,
        nonce: int = 0,
        down: Optional[str] = None,
        revert_at: Optional[int] = None,
        reject_at: Optional[int] = None,
        gas_estimate: int = 1_000_000,
        mine: bool = True,
    ):
        self.block_number = block_number
        self.chain_id = chain_id
        self.balance = balance
        self.nonce = nonce
        self.down = down
        self.revert_at = revert_at
        self.reject_at = reject_at
        self.gas_estimate = gas_estimate
        self.mine = mine
        self.calls: List[str] = []
        self.sent: List[str] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.closed = False

    async def call(self, method: str, params: list, timeout_s: Optional[float] = None) -> Any:
        self.calls.append(method)
        if self.down:
            raise Exception(f"RPC call {method} failed: {self.down}")
        if method == "eth_blockNumber":
            return hex(self.block_number)
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "eth_getBalance":
            return hex(self.balance)
        if method == "eth_getTransactionCount":
            return hex(self.nonce)
        if method == "eth_feeHistory":
            return {"baseFeePerGas": ["0x3b9aca00", "0x3b9aca00"], "reward": [["0x1", "0x77359400"]]}
        if method == "eth_gasPrice":
            return "0x3b9aca00"
        if method == "eth_estimateGas":
            return hex(self.gas_estimate)
        if method == "eth_sendRawTransaction":
            return self._accept(params[0])
        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0])
        raise Exception(f"RPC call {method} failed: rpc_error:unsupported")

    def _accept(self, raw: str) -> str:
        index = len(self.sent)
        if self.reject_at == index:
            raise Exception("RPC call eth_sendRawTransaction failed: rpc_error:insufficient funds")
        self.sent.append(raw)
        self.nonce += 1
        tx_hash = Web3.to_hex(Web3.keccak(hexstr=raw))
        if self.mine:
            self.block_number += 1
            self.receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "blockNumber": hex(self.block_number),
                "status": "0x0" if self.revert_at == index else "0x1",
                "gasUsed": hex(500_000 + index),
                "contractAddress": "0x" + f"{index + 1:040x}",
            }
        return tx_hash

    async def close(self) -> None:
        self.closed = True


class NodeFactory:
    """Client factory handing out FakeNodes by URL; unknown URLs are down."""

    def __init__(self, nodes: Optional[Dict[str, FakeNode]] = None):
        self.nodes = dict(nodes or {})
        self.requested: List[str] = []

    def __call__(self, endpoint: Any) -> FakeNode:
        self.requested.append(endpoint.url)
        node = self.nodes.get(endpoint.url)
        if node is None:
            node = FakeNode(down="timeout(8.0s)")
            self.nodes[endpoint.url] = node
        return node


def write_artifact(directory: Path, name: str, abi: list, bytecode: str = "0x6080604052") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.json"
    path.write_text(json.dumps({"contractName": name, "abi": abi, "bytecode": bytecode}), encoding="utf-8")
    return path


def write_chain(directory: Path, name: str, **fields: Any) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    data = {"name": name, "chain_id": 1, "native_symbol": "ETH", "providers": {}, "rpc_urls": []}
    data.update(fields)
    path = directory / f"{name}.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def artifacts_dir(tmp_path: Path) -> Path:
    d = tmp_path / "artifacts"
    write_artifact(d, "ERC20TestToken", TOKEN_ABI)
    write_artifact(d, "LendingPool", POOL_ABI)
    return d


@pytest.fixture
def chains_dir(tmp_path: Path) -> Path:
    d = tmp_path / "chains"
    write_chain(
        d,
        "ethereum",
        providers={"infura": "https://infura.example/v3/{key}", "alchemy": "https://alchemy.example/v2/{key}"},
        rpc_urls=["https://public-1.example", "https://public-2.example"],
        min_balance_wei=str(ONE_ETH // 20),
    )
    write_chain(d, "sepolia", chain_id=11155111, rpc_urls=["https://sepolia.example"])
    return d


@pytest.fixture
def make_settings(tmp_path: Path, artifacts_dir: Path):
    def _make(**overrides: Any) -> Settings:
        values: Dict[str, Any] = {
            "provider_keys": {},
            "deployer_key": TEST_KEY,
            "store_path": tmp_path / "state" / "deployments.json",
            "state_dir": tmp_path / "state",
            "artifacts_dir": artifacts_dir,
            "deployment_chains": ("ethereum",),
            "probe_timeout_s": 1.0,
            "receipt_timeout_s": 1.0,
            "receipt_poll_s": 0.0,
        }
        values.update(overrides)
        return Settings(**values)

    return _make
