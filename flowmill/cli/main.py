#!/usr/bin/env python3
"""Flowmill CLI - management utility for the workflow engine."""

import argparse
import asyncio
import sys
from pathlib import Path

from flowmill.settings import settings
from flowmill.utils.db_manager import db_manager
from flowmill.utils.logger import logger


def init_project(path: str) -> None:
    """Create a settings file and the storage directory in ``path``."""
    project_path = Path(path).resolve()
    storage = project_path / "data"
    storage.mkdir(parents=True, exist_ok=True)
    logger.info(f"Created directory: {storage}")

    settings_content = """# Flowmill Configuration File

debug = false

# Database settings
database_driver = "sqlite"
database_name = "flowmill"

# Storage settings
storage_path = "./data"

# Broker settings
rabbitmq_host = "localhost"
rabbitmq_port = 5672

# Modules exposing register(handlers, registry)
handler_modules = []

# Health monitor
problem_flow_threshold = 3
"""

    settings_file = project_path / "settings.toml"
    if not settings_file.exists():
        settings_file.write_text(settings_content)
        logger.info(f"Created settings file: {settings_file}")

    logger.info(f"Project initialized at {project_path}")


async def init_database() -> None:
    """Create all tables."""
    logger.info("Initializing database...")
    await db_manager.create_tables()
    await db_manager.close()
    logger.info("Database initialized successfully")


async def sweep_stuck_jobs(timeout_minutes: int | None = None) -> int:
    """Run one stuck-job sweep and return the number of failed jobs."""
    from flowmill.services.stuck_job_reaper import StuckJobReaper

    reaper = StuckJobReaper(timeout_minutes=timeout_minutes)
    try:
        return await reaper.sweep_once()
    finally:
        await db_manager.close()


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(prog="flowmill", description="Flowmill workflow engine CLI")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    init_parser = subparsers.add_parser("init", help="Initialize a new Flowmill project")
    init_parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Path where to create the project (default: current directory)",
    )

    # db command
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="db_command")
    db_subparsers.add_parser("init", help="Initialize database with tables")

    # worker command
    worker_parser = subparsers.add_parser("worker", help="Run a step worker")
    worker_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Concurrent tasks (default: {settings.worker_concurrency})",
    )

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Fail stuck jobs once and exit")
    sweep_parser.add_argument(
        "--timeout-minutes",
        type=int,
        default=None,
        help=f"Age of a stuck job (default: {settings.stuck_job_timeout_minutes})",
    )

    args = parser.parse_args()

    if args.command == "init":
        init_project(args.path)
    elif args.command == "db":
        if args.db_command == "init":
            asyncio.run(init_database())
        else:
            db_parser.print_help()
    elif args.command == "worker":
        from flowmill.services.scheduling.worker import run_worker

        asyncio.run(run_worker(args.workers))
    elif args.command == "sweep":
        failed = asyncio.run(sweep_stuck_jobs(args.timeout_minutes))
        logger.info(f"Sweep finished: {failed} job(s) failed")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
