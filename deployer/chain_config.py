from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

CHAINS_DIR = Path(__file__).resolve().parent / "chains"

# Used when a chain has no registry entry or no explicit threshold: 0.05 ETH.
DEFAULT_MIN_BALANCE_WEI = 50_000_000_000_000_000


@dataclass(frozen=True)
class ChainConfig:
    name: str
    chain_id: Optional[int]
    native_symbol: str = "ETH"
    providers: Dict[str, str] = field(default_factory=dict)
    rpc_urls: List[str] = field(default_factory=list)
    min_balance_wei: int = DEFAULT_MIN_BALANCE_WEI

    def provider_url(self, provider: str, key: str) -> Optional[str]:
        template = self.providers.get(provider)
        if not template or not key:
            return None
        return template.replace("{key}", key)


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def _normalize_providers(raw: Any) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not isinstance(raw, dict):
        return out
    for k, v in raw.items():
        if not k or not v:
            continue
        out[str(k).strip().lower()] = str(v).strip()
    return out


def _parse_wei(raw: Any, default: int) -> int:
    if raw is None:
        return int(default)
    try:
        return int(str(raw), 0) if isinstance(raw, str) else int(raw)
    except (TypeError, ValueError):
        return int(default)


def load_chain_config(chain_name: str, *, base_dir: Optional[Path] = None) -> Optional[ChainConfig]:
    """Load ``<base_dir>/<chain_name>.json``; None for unknown chains."""
    name = str(chain_name or "").strip().lower()
    if not name or "/" in name or "\\" in name or name.startswith("."):
        return None
    path = (base_dir or CHAINS_DIR) / f"{name}.json"
    if not path.exists():
        return None
    data = _read_json(path)
    if not isinstance(data, dict):
        return None

    chain_id: Optional[int] = None
    try:
        if data.get("chain_id") is not None:
            chain_id = int(data.get("chain_id"))
    except (TypeError, ValueError):
        chain_id = None

    return ChainConfig(
        name=str(data.get("name") or name).strip().lower(),
        chain_id=chain_id,
        native_symbol=str(data.get("native_symbol") or "ETH"),
        providers=_normalize_providers(data.get("providers")),
        rpc_urls=[str(x).strip() for x in (data.get("rpc_urls") or []) if str(x).strip()],
        min_balance_wei=_parse_wei(data.get("min_balance_wei"), DEFAULT_MIN_BALANCE_WEI),
    )


def chain_or_default(chain_name: str, *, base_dir: Optional[Path] = None) -> ChainConfig:
    """Registry entry, or a bare config with no providers and no fallbacks."""
    cfg = load_chain_config(chain_name, base_dir=base_dir)
    if cfg is not None:
        return cfg
    return ChainConfig(name=str(chain_name or "").strip().lower(), chain_id=None)
