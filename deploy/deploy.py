import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from deployer.config import load_settings  # noqa: E402
from deployer.logging_setup import configure_logging  # noqa: E402
from deployer.router import OperationRouter  # noqa: E402

OPERATIONS = (
    "deploy",
    "get_addresses",
    "get_status",
    "verify",
    "diagnose",
    "health_check",
    "test_rpcs",
    "get_logs",
    "store_contracts",
    "get_deployment_info",
)


def build_body(args: argparse.Namespace) -> Dict[str, Any]:
    body: Dict[str, Any] = {}
    if args.body:
        raw = args.body
        if raw.startswith("@"):
            raw = Path(raw[1:]).read_text(encoding="utf-8")
        loaded = json.loads(raw)
        if not isinstance(loaded, dict):
            raise SystemExit("--body must be a JSON object")
        body.update(loaded)
    body["operation"] = args.operation
    if args.chain:
        body["chain"] = args.chain
    if args.rpc:
        body["rpcUrl"] = args.rpc
    if args.fallback_rpc:
        body["fallbackRpcs"] = list(args.fallback_rpc)
    if args.limit is not None:
        body["limit"] = args.limit
    return body


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Deploy the token set and lending pool, or inspect deployments")
    parser.add_argument("operation", choices=OPERATIONS)
    parser.add_argument("--chain", default="", help="target chain (e.g. ethereum)")
    parser.add_argument("--rpc", default="", help="preferred RPC URL, tried after authenticated providers")
    parser.add_argument("--fallback-rpc", action="append", default=[], help="extra fallback RPC URL (repeatable)")
    parser.add_argument("--limit", type=int, default=None, help="get_logs: max entries")
    parser.add_argument("--body", default="", help="extra JSON body fields, or @file.json")
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)
    router = OperationRouter(settings)
    result = asyncio.run(router.handle(build_body(args)))
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
