"""CLI entry point for fieldsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

import httpx

from .config import load_config
from .exceptions import ClientInputError, StoreError
from .store import RecordStore
from .sync import ObservationOutbox, SyncClient, SyncStatus


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the reconciliation server."""
    config = load_config(args.config)

    try:
        from .server import create_app

        import uvicorn
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        return 1

    store = RecordStore(config.store.db_path, config.store.collection)
    try:
        store.connect()
        store.ping()
    except StoreError as e:
        # Nothing works without the store
        print(f"Error: {e}", file=sys.stderr)
        return 1

    host = args.host or config.server.host
    port = args.port or config.server.port

    print("Starting Fieldsync server")
    print(f"Store: {store.db_path} ({config.store.collection})")
    print(f"URL: http://{host}:{port}")
    print(f"API: http://{host}:{port}/api")

    app = create_app(config, store)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        store.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check the remote server and the local outbox."""
    config = load_config(args.config)
    remote_url = args.url or config.sync.remote_url

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "remote": {"url": remote_url, "reachable": False},
    }

    if remote_url:
        try:
            async with httpx.AsyncClient(timeout=config.sync.timeout_seconds) as client:
                response = await client.get(f"{remote_url.rstrip('/')}/api/health")
            status_data["remote"]["reachable"] = True
            status_data["remote"]["status_code"] = response.status_code
            status_data["remote"]["health"] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            status_data["remote"]["error"] = str(e)

    outbox = ObservationOutbox(config.sync.outbox_db_path)
    try:
        status_data["outbox"] = outbox.get_stats()
    finally:
        outbox.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        remote = status_data["remote"]
        print("Fieldsync Status Check")
        print("======================")
        print()
        print(f"Server ({remote['url'] or 'not configured'}):")
        if remote["reachable"]:
            health = remote.get("health", {})
            print(f"  Status: {health.get('status', 'unknown')} (HTTP {remote['status_code']})")
            print(f"  Message: {health.get('message', '')}")
        else:
            print("  Status: Not reachable")
            if remote.get("error"):
                print(f"  Error: {remote['error']}")

        print()
        print("Outbox:")
        print(f"  Pending: {status_data['outbox']['pending_entries']}")
        print(f"  Total: {status_data['outbox']['total_entries']}")

    return 0


def cmd_enqueue(args: argparse.Namespace) -> int:
    """Queue observations from a JSON file for the next push."""
    config = load_config(args.config)

    try:
        with open(args.file) as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        print(f"Cannot read {args.file}: {e}", file=sys.stderr)
        return 1

    documents = data.get("observations", []) if isinstance(data, dict) else data
    if not isinstance(documents, list):
        print("Expected a list of observations", file=sys.stderr)
        return 1

    outbox = ObservationOutbox(config.sync.outbox_db_path)
    queued = 0
    try:
        for document in documents:
            try:
                outbox.enqueue(document)
                queued += 1
            except ClientInputError as e:
                print(f"Skipped: {e}", file=sys.stderr)
    finally:
        outbox.close()

    print(f"Queued {queued} of {len(documents)} observations")
    return 0 if queued == len(documents) else 1


async def cmd_push(args: argparse.Namespace) -> int:
    """Push pending observations to the server."""
    config = load_config(args.config)

    outbox = ObservationOutbox(config.sync.outbox_db_path)
    client = SyncClient(
        outbox,
        remote_url=args.url or config.sync.remote_url,
        batch_size=config.sync.batch_size,
        max_retries=config.sync.retry_max_attempts,
        timeout=config.sync.timeout_seconds,
    )

    try:
        result = await client.flush()
    finally:
        outbox.close()

    print(f"Sync: {result.status.value}")
    print(f"  Pushed: {result.entries_pushed}")
    print(f"  Failed: {result.entries_failed}")
    for error in result.errors:
        print(f"    - {error.get('id')}: {error.get('error')}")
    if result.error:
        print(f"  Error: {result.error}")

    return 0 if result.status == SyncStatus.SUCCESS else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="fieldsync",
        description="Offline-first synchronization of field observations",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the reconciliation server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 3000)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server and outbox status")
    status_parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Server base URL (default: sync.remote_url)",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue observations from a JSON file")
    enqueue_parser.add_argument("file", type=Path, help="JSON list of observations")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    # Push command
    push_parser = subparsers.add_parser("push", help="Push pending observations to the server")
    push_parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Server base URL (default: sync.remote_url)",
    )
    push_parser.set_defaults(func=cmd_push)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, getattr(args, "json", False))

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
