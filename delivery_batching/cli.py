from __future__ import annotations

import argparse
import json

from delivery_batching.batching.errors import BatchingError
from delivery_batching.batching.service import ConsolidationService
from delivery_batching.core.config import get_settings
from delivery_batching.core.logging import configure_logging
from delivery_batching.persistence.pg import init_db


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delivery batching CLI")
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("init-db", help="Create database tables")

    resync = top.add_parser("resync", help="Rebuild batch weights and membership from line items")
    scope = resync.add_mutually_exclusive_group(required=True)
    scope.add_argument("--locality", help="Locality key to resync")
    scope.add_argument("--all", action="store_true", help="Resync every known locality")

    pending = top.add_parser("batch-pending", help="Retry allocation of approved orders without a batch")
    pending.add_argument("--locality", default=None)

    top.add_parser("auto-assign", help="Assign ready open batches to free drivers")

    serve = top.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser


def _print(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "delivery_batching.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    if args.command == "serve":
        return _serve(args)

    init_db()
    if args.command == "init-db":
        _print({"status": "ok"})
        return 0

    service = ConsolidationService()
    try:
        if args.command == "resync":
            reports = service.resync_all() if args.all else [service.resync_locality(args.locality)]
            _print({"count": len(reports), "reports": [r.to_dict() for r in reports]})
            violations = sum(len(r.capacity_violations) for r in reports)
            return 1 if violations else 0
        if args.command == "batch-pending":
            summary = service.batch_pending_orders(args.locality)
            _print(summary)
            return 1 if summary["failed"] else 0
        if args.command == "auto-assign":
            assigned = service.auto_assign_ready_batches()
            _print({"count": len(assigned), "assigned": assigned})
            return 0
    except BatchingError as exc:
        _print({"error": type(exc).__name__, "detail": str(exc)})
        return 1

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
