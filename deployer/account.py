from __future__ import annotations

from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from deployer.errors import ConfigError
from infra.rpc import get_balance, get_transaction_count


class DeployerAccount:
    """Signing key wrapper. ``address`` never needs the network."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_secret(cls, secret: Optional[str]) -> "DeployerAccount":
        key = str(secret or "").strip()
        if not key:
            raise ConfigError("DEPLOYMENT_PRIVATE_KEY not configured")
        if not key.startswith("0x"):
            key = "0x" + key
        try:
            return cls(Account.from_key(key))
        except Exception as exc:
            # The key itself must never end up in the message.
            raise ConfigError(f"DEPLOYMENT_PRIVATE_KEY is not a valid private key ({type(exc).__name__})") from None

    @property
    def address(self) -> str:
        return self._account.address

    async def balance(self, rpc: Any, *, timeout_s: Optional[float] = None) -> int:
        return await get_balance(rpc, self.address, timeout_s=timeout_s)

    async def nonce(self, rpc: Any, *, timeout_s: Optional[float] = None) -> int:
        return await get_transaction_count(rpc, self.address, block="pending", timeout_s=timeout_s)

    def sign(self, tx: Dict[str, Any]) -> Dict[str, str]:
        """Return ``{"raw": 0x..., "hash": 0x...}`` for a transaction dict."""
        signed = self._account.sign_transaction(tx)
        return {"raw": Web3.to_hex(signed.raw_transaction), "hash": Web3.to_hex(signed.hash)}

    def __repr__(self) -> str:
        return f"DeployerAccount({self.address})"


def format_native(amount_wei: int, symbol: str = "ETH") -> str:
    return f"{Web3.from_wei(int(amount_wei), 'ether')} {symbol}"
