from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


def _to_hex(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    try:
        return hex(int(value))
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _median(values: Iterable[int]) -> int:
    vals = sorted(int(v) for v in values if v is not None)
    if not vals:
        return 0
    mid = len(vals) // 2
    if len(vals) % 2:
        return vals[mid]
    return int((vals[mid - 1] + vals[mid]) / 2)


def with_buffer(gas: int, buffer_bps: int) -> int:
    """``gas`` scaled up by ``buffer_bps`` (2000 == +20%), rounded up."""
    gas = int(gas)
    bps = max(0, int(buffer_bps))
    return -(-gas * (10_000 + bps) // 10_000)


async def get_fee_params(
    rpc: Any,
    *,
    block_count: int = 10,
    reward_percentiles: Optional[list[int]] = None,
    timeout_s: float = 5.0,
) -> Dict[str, Any]:
    """Return EIP-1559 fee params from eth_feeHistory (fallback to eth_gasPrice).

    ``legacy`` is True when only a gas price could be obtained. All fields are
    zero when neither method answered.
    """
    if reward_percentiles is None:
        reward_percentiles = [50, 75]

    try:
        res = await rpc.call(
            "eth_feeHistory",
            [hex(int(block_count)), "latest", reward_percentiles],
            timeout_s=timeout_s,
        )
        base_fees = [int(x, 16) for x in (res.get("baseFeePerGas") or []) if isinstance(x, str)]
        if not base_fees:
            raise ValueError("feeHistory without baseFeePerGas")
        rewards = res.get("reward") or []
        idx = len(reward_percentiles) - 1
        priority_vals = []
        for row in rewards:
            if isinstance(row, (list, tuple)) and len(row) > idx and isinstance(row[idx], str):
                priority_vals.append(int(row[idx], 16))
        max_priority = _median(priority_vals) if priority_vals else 0
        base_fee = int(base_fees[-1])
        return {
            "legacy": False,
            "base_fee_per_gas": base_fee,
            "max_priority_fee_per_gas": int(max_priority),
            "max_fee_per_gas": int(base_fee * 2 + max_priority),
        }
    except Exception:
        pass

    try:
        gas_price = _to_int(await rpc.call("eth_gasPrice", [], timeout_s=timeout_s))
        return {
            "legacy": True,
            "base_fee_per_gas": gas_price,
            "max_priority_fee_per_gas": gas_price,
            "max_fee_per_gas": gas_price,
        }
    except Exception:
        return {
            "legacy": True,
            "base_fee_per_gas": 0,
            "max_priority_fee_per_gas": 0,
            "max_fee_per_gas": 0,
        }


async def estimate_gas(
    rpc: Any,
    tx_params: Dict[str, Any],
    *,
    buffer_bps: int = 0,
    timeout_s: float = 10.0,
) -> int:
    """eth_estimateGas plus ``buffer_bps``. Errors propagate; a revert here means the deploy would revert."""
    payload = dict(tx_params)
    for key in ("value", "gas", "maxFeePerGas", "maxPriorityFeePerGas", "gasPrice", "nonce"):
        if key in payload:
            hx = _to_hex(payload.get(key))
            if hx is not None:
                payload[key] = hx
    res = await rpc.call("eth_estimateGas", [payload], timeout_s=timeout_s)
    return with_buffer(_to_int(res), buffer_bps)
