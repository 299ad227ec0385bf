import signal
from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger

from .cleanup import cleanup_backups
from .config import LOG_FILE, MAX_WORKERS, REPORT_FILE, check_settings
from .engine import MigrationEngine
from .exceptions import SetupError
from .kube import KubernetesHelper
from .ledger import StatusLedger
from .logger_config import setup_logger
from .models import MigrationItem

app = typer.Typer(help="Move PersistentVolumeClaims off a Kubernetes node before draining it.")

NODE_NAME = typer.Option(..., "--node-name", "--nodeName", "-n", help="Node whose claims are migrated")
VERBOSE = typer.Option(0, "--verbose", "-v", count=True, help="-v for debug, -vv for trace logging")
LOG_FILE_OPTION = typer.Option(LOG_FILE, "--log-file", help="Also write logs to this file")


@contextmanager
def cancel_on_signals(engine: MigrationEngine):
    """Turn SIGINT/SIGTERM into a cooperative cancellation of ``engine``"""
    def handler(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}")
        engine.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def log_summary(items: List[MigrationItem]):
    counts = Counter(item.label for item in items)
    for label, count in sorted(counts.items()):
        logger.info(f"  {label}: {count}")
    failed = [item.key for item in items if item.failed]
    if failed:
        logger.warning(f"{len(failed)} claims did not complete: {', '.join(failed)}")


@app.command()
def migrate(
    node_name: str = NODE_NAME,
    verbose: int = VERBOSE,
    log_file: Optional[Path] = LOG_FILE_OPTION,
    report: Path = typer.Option(REPORT_FILE, "--report", help="Where the per-claim status report is written"),
    max_workers: int = typer.Option(MAX_WORKERS, "--max-workers", min=1, help="Claims processed in parallel per stage"),
):
    """Migrate every claim bound to NODE_NAME to freshly provisioned volumes."""
    setup_logger(verbose, log_file)
    ledger = StatusLedger()
    try:
        check_settings()
        engine = MigrationEngine(node_name, ledger=ledger, max_workers=max_workers)
        with cancel_on_signals(engine):
            items = engine.run()
        logger.info(f"Migration of node {node_name} finished")
        log_summary(items)
    except SetupError as e:
        logger.critical(f"Cannot start migration: {e}")
        raise typer.Exit(code=1)
    finally:
        ledger.dump(report)


@app.command()
def plan(
    node_name: str = NODE_NAME,
    verbose: int = VERBOSE,
    log_file: Optional[Path] = LOG_FILE_OPTION,
):
    """List the claims a migration of NODE_NAME would move, without changing anything."""
    setup_logger(verbose, log_file)
    try:
        check_settings()
        engine = MigrationEngine(node_name)
        items = engine.discover()
    except SetupError as e:
        logger.critical(f"Cannot plan migration: {e}")
        raise typer.Exit(code=1)

    for item in items:
        logger.info(f"[DRY-RUN] Would migrate {item.key} via backup claim {item.backup_name}")


@app.command()
def cleanup(
    node_name: str = NODE_NAME,
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list the backup claims"),
    verbose: int = VERBOSE,
    log_file: Optional[Path] = LOG_FILE_OPTION,
):
    """Delete the backup claims left by a migration of NODE_NAME."""
    setup_logger(verbose, log_file)
    try:
        check_settings()
        deleted, failed = cleanup_backups(KubernetesHelper(), node_name, dry_run=dry_run)
    except SetupError as e:
        logger.critical(f"Cannot clean up backups: {e}")
        raise typer.Exit(code=1)

    logger.info(f"Deleted {deleted} backup claims, {failed} failures")
    if failed:
        raise typer.Exit(code=1)
