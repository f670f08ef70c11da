from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from web3 import Web3

from deployer import config
from deployer.account import DeployerAccount
from deployer.artifacts import ContractArtifact, DeploymentResult, creation_data, resolve_args
from deployer.errors import DeployError
from infra import gas as gas_oracle
from infra.metrics import METRICS

LOGGER = logging.getLogger("deployer.contracts")


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class ContractDeployer:
    """Submits contract-creation transactions for one account on one client.

    The account's transactions share a single nonce sequence, so ``deploy``
    holds a lock from nonce assignment until the receipt is in. Concurrent
    callers queue instead of racing for the same nonce.
    """

    def __init__(
        self,
        account: DeployerAccount,
        rpc: Any,
        *,
        chain_id: int,
        gas_buffer_bps: int,
        receipt_timeout_s: float,
        receipt_poll_s: float,
        rpc_timeout_s: Optional[float] = None,
    ):
        self.account = account
        self.rpc = rpc
        self.chain_id = int(chain_id)
        self.gas_buffer_bps = int(gas_buffer_bps)
        self.receipt_timeout_s = float(receipt_timeout_s)
        self.receipt_poll_s = max(0.0, float(receipt_poll_s))
        self.rpc_timeout_s = rpc_timeout_s
        self._lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    async def _nonce(self) -> int:
        if self._next_nonce is None:
            self._next_nonce = await self.account.nonce(self.rpc, timeout_s=self.rpc_timeout_s)
        return self._next_nonce

    async def _build_tx(self, artifact: ContractArtifact, data: str, nonce: int) -> Dict[str, Any]:
        fees = await gas_oracle.get_fee_params(self.rpc, timeout_s=self.rpc_timeout_s or 5.0)
        if not fees.get("max_fee_per_gas"):
            raise DeployError(artifact.name, "fee estimation failed")

        estimate_params: Dict[str, Any] = {"from": self.account.address, "data": data, "value": 0}
        try:
            gas_limit = await gas_oracle.estimate_gas(
                self.rpc,
                estimate_params,
                buffer_bps=self.gas_buffer_bps,
                timeout_s=self.rpc_timeout_s or 10.0,
            )
        except Exception as exc:
            raise DeployError(artifact.name, f"gas estimation failed: {str(exc)[:200]}") from exc
        if gas_limit <= 0:
            raise DeployError(artifact.name, "gas estimation returned zero")

        tx: Dict[str, Any] = {
            "chainId": self.chain_id,
            "nonce": int(nonce),
            "gas": int(gas_limit),
            "value": 0,
            "data": data,
        }
        if fees.get("legacy"):
            tx["gasPrice"] = int(fees["max_fee_per_gas"])
        else:
            tx["type"] = 2
            tx["maxFeePerGas"] = int(fees["max_fee_per_gas"])
            tx["maxPriorityFeePerGas"] = int(fees["max_priority_fee_per_gas"])
        return tx

    def _poll_timeout(self, remaining_s: float) -> float:
        capped = max(remaining_s, config.RPC_TIMEOUT_MIN_S)
        if self.rpc_timeout_s is None:
            return capped
        return min(float(self.rpc_timeout_s), capped)

    async def wait_for_receipt(self, artifact: ContractArtifact, tx_hash: str) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout_s
        last_err: Optional[str] = None
        while True:
            try:
                timeout_s = self._poll_timeout(deadline - loop.time())
                receipt = await self.rpc.call("eth_getTransactionReceipt", [tx_hash], timeout_s=timeout_s)
            except Exception as exc:
                receipt = None
                last_err = str(exc)[:200]
            if receipt and receipt.get("blockNumber"):
                return receipt
            if loop.time() >= deadline:
                reason = f"timeout waiting for inclusion after {self.receipt_timeout_s:.0f}s"
                if last_err:
                    reason += f" (last error: {last_err})"
                raise DeployError(artifact.name, reason, tx_hash=tx_hash)
            await asyncio.sleep(min(self.receipt_poll_s, max(0.0, deadline - loop.time())))

    async def deploy(self, artifact: ContractArtifact, addresses: Mapping[str, str]) -> DeploymentResult:
        args = resolve_args(artifact, addresses)
        data = creation_data(artifact, args)

        async with self._lock:
            nonce = await self._nonce()
            tx = await self._build_tx(artifact, data, nonce)
            signed = self.account.sign(tx)
            try:
                res = await self.rpc.call("eth_sendRawTransaction", [signed["raw"]], timeout_s=self.rpc_timeout_s)
            except Exception as exc:
                raise DeployError(artifact.name, f"submission failed: {str(exc)[:200]}", tx_hash=signed["hash"]) from exc
            tx_hash = str(res or signed["hash"])
            # Submitted: this nonce is spent whatever happens next.
            self._next_nonce = nonce + 1
            METRICS.inc("contracts_submitted_total", 1)
            LOGGER.info("%s submitted nonce=%d gas=%d tx=%s", artifact.name, nonce, tx["gas"], tx_hash)

            receipt = await self.wait_for_receipt(artifact, tx_hash)

        if _to_int(receipt.get("status", "0x1")) != 1:
            raise DeployError(artifact.name, "transaction reverted", tx_hash=tx_hash)
        address = receipt.get("contractAddress")
        if not address:
            raise DeployError(artifact.name, "receipt has no contractAddress", tx_hash=tx_hash)

        result = DeploymentResult(
            name=artifact.name,
            address=Web3.to_checksum_address(address),
            transaction_hash=tx_hash,
            gas_used=_to_int(receipt.get("gasUsed") or 0),
            block_number=_to_int(receipt["blockNumber"]),
        )
        METRICS.inc("contracts_deployed_total", 1)
        LOGGER.info("%s deployed at %s (gas %d)", result.name, result.address, result.gas_used)
        return result
