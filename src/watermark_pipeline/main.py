"""Main module for the watermark pipeline CLI."""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .core.config import WorkerConfig, load_config
from .core.exceptions import ConfigurationError, WatermarkPipelineError
from .core.factories import WorkerRuntime
from .core.logging_config import configure_worker_logging, setup_logger
from .core.models import ScopeType, WatermarkSettings
from .processors.control import cancel_job, request_rollback, submit_apply_job
from .storage import init_db


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="watermark-pipeline",
        description="Watermark Pipeline - bulk catalog image watermarking with rollback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the tables
  watermark-pipeline init-db

  # Queue a job for every active product, using the shop's saved design
  watermark-pipeline submit --shop my-shop.myshopify.com --scope all

  # Queue a job for two products with an explicit design
  watermark-pipeline submit --shop my-shop.myshopify.com --scope manual \\
                            --value gid://shopify/Product/1,gid://shopify/Product/2 \\
                            --settings-file design.json

  # Process everything queued, then exit
  watermark-pipeline run-once

  # Run the apply and rollback consumers until interrupted
  watermark-pipeline worker
        """,
    )
    parser.add_argument("--database-url", default=None, help="Override WATERMARK_DATABASE_URL")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers: argparse._SubParsersAction = parser.add_subparsers(
        dest="command", help="Available commands"
    )

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("worker", help="Consume apply and rollback queues until stopped")
    subparsers.add_parser("run-once", help="Process every queued message, then exit")

    submit_parser: argparse.ArgumentParser = subparsers.add_parser(
        "submit", help="Create and queue a watermark job"
    )
    submit_parser.add_argument("--shop", required=True, help="Shop domain")
    submit_parser.add_argument(
        "--scope",
        default=ScopeType.ALL.value,
        choices=[s.value for s in ScopeType],
        help="Which products to watermark (default: all)",
    )
    submit_parser.add_argument(
        "--value", default=None, help="Collection id, or comma separated product ids"
    )
    submit_parser.add_argument(
        "--settings-file",
        type=Path,
        default=None,
        help="JSON watermark design; defaults to the shop's saved design",
    )

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending or running job")
    cancel_parser.add_argument("job_id")

    rollback_parser = subparsers.add_parser("rollback", help="Queue a rollback of a completed job")
    rollback_parser.add_argument("job_id")

    status_parser = subparsers.add_parser("status", help="Show job progress")
    status_parser.add_argument("job_id")
    status_parser.add_argument("--items", action="store_true", help="Include per-image items")

    token_parser = subparsers.add_parser("set-token", help="Store a shop's API access token")
    token_parser.add_argument("--shop", required=True)
    token_parser.add_argument("--token", required=True)

    subparsers.add_parser("version", help="Show version information")
    return parser


def _load_settings(path: Optional[Path]) -> Optional[WatermarkSettings]:
    if path is None:
        return None
    try:
        return WatermarkSettings.model_validate(json.loads(path.read_text()))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Invalid settings file {path}: {exc}") from exc


async def _run_worker(runtime: WorkerRuntime) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await asyncio.gather(
        runtime.apply_consumer().run(stop_event),
        runtime.rollback_consumer().run(stop_event),
    )


async def _status(runtime: WorkerRuntime, job_id: str, with_items: bool) -> dict:
    job = await runtime.store.require_job(job_id)
    report = job.model_dump(mode="json")
    run = await runtime.store.get_latest_rollback_run(job_id)
    report["rollback"] = run.model_dump(mode="json") if run else None
    if with_items:
        items = await runtime.store.list_items(job_id)
        report["items"] = [item.model_dump(mode="json") for item in items]
    return report


async def run_command(args: argparse.Namespace, config: WorkerConfig) -> int:
    runtime = WorkerRuntime(config)
    try:
        if args.command == "init-db":
            await init_db(runtime.engine)
            print("Database tables created")
        elif args.command == "worker":
            configure_worker_logging("main", config.log_level)
            await _run_worker(runtime)
        elif args.command == "run-once":
            applied = await runtime.apply_consumer().drain()
            rolled_back = await runtime.rollback_consumer().drain()
            print(f"Handled {applied} apply and {rolled_back} rollback message(s)")
        elif args.command == "submit":
            job = await submit_apply_job(
                runtime.store,
                runtime.queue,
                args.shop,
                ScopeType(args.scope),
                args.value,
                _load_settings(args.settings_file),
            )
            print(job.id)
        elif args.command == "cancel":
            job = await cancel_job(runtime.store, runtime.queue, args.job_id)
            print(f"Job {job.id} is {job.status.value}")
        elif args.command == "rollback":
            await request_rollback(runtime.store, runtime.queue, args.job_id)
            print(f"Rollback of job {args.job_id} queued")
        elif args.command == "status":
            print(json.dumps(await _status(runtime, args.job_id, args.items), indent=2))
        elif args.command == "set-token":
            await runtime.credentials.save_access_token(args.shop, args.token)
            print(f"Access token stored for {args.shop}")
    finally:
        await runtime.close()
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the ``watermark-pipeline`` command.

    Every command except ``version`` opens the configured database; worker
    tunables come from ``WATERMARK_*`` environment variables.
    """
    parser = build_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    if args.command == "version":
        print("Watermark Pipeline CLI")
        print(f"Version {__version__}")
        print("Bulk catalog image watermarking with rollback")
        sys.exit(0)

    elif args.command is None:
        parser.print_help()
        sys.exit(1)

    else:
        logger = setup_logger(level="DEBUG" if args.debug else None)
        try:
            overrides = {"database_url": args.database_url} if args.database_url else {}
            config = load_config(**overrides)
            exit_code = asyncio.run(run_command(args, config))
        except WatermarkPipelineError as exc:
            logger.error(str(exc))
            print(f"Error: {exc}", file=sys.stderr)
            exit_code = 2
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
