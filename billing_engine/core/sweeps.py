"""
Bounded-parallel processing of sweep entities.

Every sweep (usage billing, deferred revenue, payment retries, dunning)
selects a list of entity ids and hands each one to a handler. Handlers run
concurrently up to a limit, each with its own session; a failing entity is
logged and collected without affecting its siblings.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional

import structlog

from billing_engine.core.exceptions import BillingError
from billing_engine.database.models import utcnow
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Returns True when the entity was processed, False when it was skipped
EntityHandler = Callable[[Any], Awaitable[bool]]


@dataclass
class SweepReport:
    """Outcome of one sweep run."""

    sweep: str
    processed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def record_error(self, entity_id: Hashable, error: Exception) -> None:
        """Append a per-entity error in report form."""
        if isinstance(error, BillingError):
            entry = error.to_dict()
        else:
            entry = {
                "code": "unexpected_error",
                "message": str(error),
                "type": error.__class__.__name__,
            }
        entry["entity_id"] = str(entity_id)
        self.errors.append(entry)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sweep": self.sweep,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


async def run_per_entity(
    sweep: str,
    entity_ids: Iterable[Hashable],
    handler: EntityHandler,
    concurrency: int = 1,
) -> SweepReport:
    """
    Run ``handler`` for every entity with at most ``concurrency`` in flight.

    Args:
        sweep: Sweep name, used in logs, metrics and the report
        entity_ids: Entities selected by the sweep
        handler: Coroutine function processing one entity
        concurrency: Maximum number of entities processed at once

    Returns:
        SweepReport: Counts of processed and skipped entities plus errors
    """
    report = SweepReport(sweep=sweep)
    semaphore = asyncio.Semaphore(max(concurrency, 1))
    start_time = time.time()

    async def _run(entity_id: Hashable) -> None:
        async with semaphore:
            with structlog.contextvars.bound_contextvars(sweep=sweep, entity_id=str(entity_id)):
                try:
                    processed = await handler(entity_id)
                except BillingError as e:
                    logger.error(
                        "sweep_entity_failed",
                        error_code=e.error_code,
                        error=e.message,
                    )
                    report.record_error(entity_id, e)
                    return
                except Exception as e:
                    logger.exception("sweep_entity_unexpected_error", error=str(e))
                    report.record_error(entity_id, e)
                    return

                if processed:
                    report.processed += 1
                else:
                    report.skipped += 1

    ids = list(entity_ids)
    logger.info("sweep_started", sweep=sweep, entities=len(ids))
    await asyncio.gather(*(_run(entity_id) for entity_id in ids))

    report.finished_at = utcnow()
    duration = time.time() - start_time
    metrics.record_sweep(sweep, report.processed, report.skipped, len(report.errors), duration)

    logger.info(
        "sweep_completed",
        sweep=sweep,
        processed=report.processed,
        skipped=report.skipped,
        errors=len(report.errors),
        duration_seconds=round(duration, 3),
    )
    return report
