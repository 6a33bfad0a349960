"""
pagetrail — paginated API fetcher with an auditable execution log.

Follows pagination on third-party HTTP APIs (Link header, bookmark,
cursor or offset/limit, detected from the first page), records one log
entry per page, and optionally saves every extracted item to a sink table.

Commands
--------
  serve — HTTP service exposing POST /execute/paginated (default)
  run   — Execute one crawl in the foreground and print its parent record

Usage
-----
    # Serve on 0.0.0.0:8000
    python main.py serve --port 8000

    # One-off crawl, 5 pages max, items saved to data/tables/orders.json
    python main.py run --url "https://api.example.com/orders?limit=50" \\
        --max-iterations 5 --header "Authorization=Bearer $TOKEN" \\
        --table orders --save

    # Override settings file, verbose (DEBUG) logging
    python main.py --config /etc/pagetrail/settings.json --verbose run --url ...
"""

import argparse
import json
import logging
import sys

from pagetrail.api import create_app, parse_execution_request
from pagetrail.errors import ExecutionInitError, InvalidRequestError
from pagetrail.models import ExecutionStatus
from pagetrail.orchestrator import create_executor
from pagetrail.settings import load_settings


def _key_value(text: str) -> tuple[str, str]:
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    return key, value


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pagetrail",
        description="Paginated API fetcher with execution logging",
    )
    parser.add_argument(
        "--config",
        default=None,
        metavar="FILE",
        help="Path to settings JSON (default: config/settings.json)",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        metavar="DIR",
        help="Override data output directory (default: value from settings.json)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=False,
        help="Enable DEBUG logging",
    )
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    run = commands.add_parser("run", help="Execute one crawl and wait for it")
    run.add_argument("--url", required=True)
    run.add_argument("--method", default="GET")
    run.add_argument("--max-iterations", type=int, default=10)
    run.add_argument("--query", action="append", type=_key_value, default=[],
                     metavar="KEY=VALUE", help="Query parameter (repeatable)")
    run.add_argument("--header", action="append", type=_key_value, default=[],
                     metavar="KEY=VALUE", help="Request header (repeatable)")
    run.add_argument("--body", default=None, help="JSON request body (ignored for GET/HEAD)")
    run.add_argument("--table", default=None, help="Sink table for extracted items")
    run.add_argument("--save", action="store_true", default=False,
                     help="Save extracted items to --table")
    return parser.parse_args()


def _configure_logging(verbose: bool, log_level: str = "INFO") -> None:
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _serve(settings: dict, host: str, port: int) -> int:
    import uvicorn

    app = create_app(create_executor(settings))
    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


def _run_once(settings: dict, args: argparse.Namespace) -> int:
    try:
        body = json.loads(args.body) if args.body else None
    except json.JSONDecodeError as exc:
        logging.error("--body is not valid JSON: %s", exc)
        return 2

    payload = {
        "method":        args.method,
        "url":           args.url,
        "maxIterations": args.max_iterations,
        "queryParams":   dict(args.query),
        "headers":       dict(args.header),
        "body":          body,
        "tableName":     args.table,
        "saveData":      args.save,
    }
    try:
        request = parse_execution_request(payload)
    except InvalidRequestError as exc:
        logging.error("Invalid request: %s", exc)
        return 2

    executor = create_executor(settings)
    try:
        ack = executor.run(request)
    except ExecutionInitError as exc:
        logging.error("Could not start execution: %s", exc)
        return 1

    execution_id = ack["executionId"]
    executor.registry.wait(execution_id)
    executor.registry.shutdown()

    parent = executor.log_store.get_parent_record(execution_id)
    if parent is None:
        logging.error("Execution %s has no parent record", execution_id)
        return 1
    print(json.dumps(parent.to_dict(redact=True), indent=2, default=str))
    return 0 if parent.status == ExecutionStatus.COMPLETED else 1


def main() -> int:
    args = _parse_args()

    try:
        settings = load_settings(args.config)
    except json.JSONDecodeError as exc:
        print(f"Invalid settings file: {exc}", file=sys.stderr)
        return 1
    if args.data_dir:
        settings["data_dir"] = args.data_dir

    _configure_logging(args.verbose, settings.get("log_level", "INFO"))

    if args.command == "run":
        return _run_once(settings, args)
    return _serve(settings, getattr(args, "host", "0.0.0.0"), getattr(args, "port", 8000))


if __name__ == "__main__":
    sys.exit(main())
