"""
Sweep worker.

Runs the four billing sweeps on their configured periods:

- usage_billing: report unbilled usage to the gateway
- deferred_revenue: book due straight-line installments
- payment_retries: charge failed payments whose retry date has passed
- dunning: execute due dunning steps for overdue invoices

All state lives in the database, so the worker can be stopped and restarted
at any point; several workers may run side by side thanks to the
per-subscription locks.
"""
import argparse
import asyncio
import signal
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from billing_engine.config import Settings, get_settings
from billing_engine.core.sweeps import SweepReport
from billing_engine.database.connection import close_db, init_db
from billing_engine.monitoring.logging import setup_logging
from billing_engine.services import BillingServices, build_services

logger = structlog.get_logger(__name__)

SWEEPS = ("usage_billing", "deferred_revenue", "payment_retries", "dunning")

SweepRunner = Callable[[Optional[datetime]], Awaitable[SweepReport]]


def sweep_runners(services: BillingServices) -> Dict[str, SweepRunner]:
    return {
        "usage_billing": services.usage_billing.run_billing_cycle,
        "deferred_revenue": services.revenue.run_deferred_sweep,
        "payment_retries": services.retries.run_retry_sweep,
        "dunning": services.dunning.run_dunning_sweep,
    }


def sweep_intervals(settings: Settings) -> Dict[str, int]:
    return {
        "usage_billing": settings.usage_billing_interval_seconds,
        "deferred_revenue": settings.revenue_sweep_interval_seconds,
        "payment_retries": settings.retry_sweep_interval_seconds,
        "dunning": settings.dunning_sweep_interval_seconds,
    }


async def run_sweeps_once(
    services: BillingServices,
    sweeps: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, SweepReport]:
    """
    Run the selected sweeps one after another.

    A sweep that fails as a whole (e.g. database unavailable) is logged and
    missing from the result; the remaining sweeps still run.

    Returns:
        Dict[str, SweepReport]: Report per completed sweep
    """
    runners = sweep_runners(services)
    reports: Dict[str, SweepReport] = {}
    for name in sweeps or SWEEPS:
        try:
            reports[name] = await runners[name](now)
        except Exception as e:
            logger.error("sweep_failed", sweep=name, error=str(e))
    return reports


async def start_sweep_worker(
    sweeps: Optional[Sequence[str]] = None,
    once: bool = False,
    create_tables: bool = False,
) -> None:
    """
    Start the sweep worker.

    Args:
        sweeps: Sweeps to run (all by default)
        once: Run each selected sweep once and exit
        create_tables: Create missing tables before the first run
    """
    settings = get_settings()
    setup_logging(settings)
    selected: List[str] = list(sweeps or SWEEPS)

    logger.info("sweep_worker_starting", sweeps=selected, once=once)

    if create_tables:
        await init_db()

    services = build_services(settings)
    runners = sweep_runners(services)
    intervals = sweep_intervals(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        logger.info("sweep_worker_shutdown_signal_received")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_stop)

    next_run = {name: loop.time() for name in selected}
    try:
        while not stop.is_set():
            for name in selected:
                if stop.is_set() or next_run[name] > loop.time():
                    continue
                try:
                    report = await runners[name](None)
                    if report.errors:
                        logger.warning(
                            "sweep_completed_with_errors",
                            sweep=name,
                            errors=len(report.errors),
                        )
                except Exception as e:
                    # Continue running even if one sweep fails
                    logger.error("sweep_execution_error", sweep=name, error=str(e))
                next_run[name] = loop.time() + intervals[name]

            if once:
                break

            # Check for shutdown at least every minute
            wait = max(0.0, min(next_run.values()) - loop.time())
            try:
                await asyncio.wait_for(stop.wait(), timeout=min(wait, 60))
            except asyncio.TimeoutError:
                pass
    finally:
        await close_db()
        logger.info("sweep_worker_stopped")


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Billing sweep worker")
    parser.add_argument(
        "--sweep",
        action="append",
        choices=SWEEPS,
        help="Sweep to run (repeatable; default: all)",
    )
    parser.add_argument("--once", action="store_true", help="Run each sweep once and exit")
    parser.add_argument(
        "--create-tables", action="store_true", help="Create missing tables before starting"
    )
    args = parser.parse_args(argv)

    asyncio.run(
        start_sweep_worker(sweeps=args.sweep, once=args.once, create_tables=args.create_tables)
    )


if __name__ == "__main__":
    main()
