"""Single entry point for a prediction run: EMA update, then rule evaluation."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from restock import metrics
from restock.config import settings
from restock.db.models import PredictionRun
from restock.db.session import AsyncSessionLocal
from restock.logging_config import get_logger
from restock.predict.ema_updater import EMAUpdater
from restock.predict.rule_evaluator import RuleEvaluator
from restock.predict.stats import RunStats
from restock.store.base import PredictionStore
from restock.store.sql import SQLPredictionStore
from restock.worker.run_lock import RunLockManager, run_lock_manager

logger = logging.getLogger(__name__)


class PredictionRunError(Exception):
    """A run aborted; rules committed before the failure stay committed."""

    def __init__(self, run_id: str, message: str, stats: Optional[RunStats] = None):
        super().__init__(message)
        self.run_id = run_id
        self.stats = stats or RunStats()


@dataclass
class RunSummary:
    run_id: str
    status: str  # completed | skipped
    stats: RunStats = field(default_factory=RunStats)

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "run_id": self.run_id,
            "skipped": self.skipped,
            "stats": self.stats.to_dict(),
        }


class PredictionRunner:
    """
    Runs the EMA updater and the rule evaluator in sequence.

    Each run is recorded in prediction_runs. When a lock manager is given,
    a run that finds another one in progress is recorded as skipped and does
    nothing; reruns are otherwise safe because every rule carries its own
    watermark.
    """

    def __init__(
        self,
        store: PredictionStore,
        session_factory: async_sessionmaker,
        lock_manager: Optional[RunLockManager] = None,
    ):
        self.store = store
        self.session_factory = session_factory
        self.lock_manager = lock_manager

    async def run(self, trigger: str = "scheduled", now: Optional[datetime] = None) -> RunSummary:
        """
        Execute one prediction run.

        Args:
            trigger: What started the run ('scheduled' or 'http')
            now: Evaluation time (naive UTC); defaults to the current time

        Returns:
            RunSummary with counts of processed, auto_added, suggested,
            ema_updated and errors

        Raises:
            PredictionRunError: on any unexpected failure
        """
        run_id = uuid4().hex
        log = get_logger(__name__, run_id=run_id, trigger=trigger)

        token = await self._acquire(run_id)
        if self.lock_manager is not None and token is None:
            await self._record_skipped(run_id, trigger)
            metrics.prediction_runs_total.labels(trigger=trigger, status="skipped").inc()
            log.info("Prediction run skipped: another run holds the lock")
            return RunSummary(run_id=run_id, status="skipped")

        stats = RunStats()
        start = time.monotonic()
        job_id: Optional[int] = None
        try:
            job_id = await self._start_run(run_id, trigger)
            log.info("Prediction run started")

            stats.merge(await EMAUpdater(self.store).run())
            stats.merge(await RuleEvaluator(self.store).run(now=now))

            await self._finish_run(job_id, "completed", stats)
        except Exception as e:
            log.error(f"Prediction run failed: {e}", exc_info=True)
            metrics.prediction_runs_total.labels(trigger=trigger, status="failed").inc()
            if job_id is not None:
                await self._mark_failed(job_id, stats, str(e))
            raise PredictionRunError(run_id, str(e), stats) from e
        finally:
            metrics.prediction_run_duration_seconds.observe(time.monotonic() - start)
            if token is not None:
                await self._release(run_id, token)

        metrics.prediction_runs_total.labels(trigger=trigger, status="completed").inc()
        metrics.last_run_timestamp.set(time.time())
        log.info(f"Prediction run completed: {stats.to_dict()}")
        return RunSummary(run_id=run_id, status="completed", stats=stats)

    async def _acquire(self, run_id: str) -> Optional[str]:
        if self.lock_manager is None:
            return None
        try:
            return await self.lock_manager.acquire_lock(run_id)
        except redis.RedisError as e:
            # Watermarks make overlapping runs safe, so a lock outage is not fatal.
            logger.warning(f"Run lock unavailable, continuing without it: {e}")
            return ""

    async def _release(self, run_id: str, token: str) -> None:
        if self.lock_manager is None or not token:
            return
        try:
            await self.lock_manager.safe_unlock(run_id, token=token)
        except redis.RedisError as e:
            logger.warning(f"Failed to release run lock (expires by TTL): {e}")

    async def _start_run(self, run_id: str, trigger: str) -> int:
        async with self.session_factory() as db:
            job = PredictionRun(
                run_id=run_id,
                trigger=trigger,
                status="running",
                started_at=datetime.utcnow(),
            )
            db.add(job)
            await db.commit()
            await db.refresh(job)
            return job.id

    async def _record_skipped(self, run_id: str, trigger: str) -> None:
        now = datetime.utcnow()
        async with self.session_factory() as db:
            db.add(PredictionRun(
                run_id=run_id,
                trigger=trigger,
                status="skipped",
                started_at=now,
                completed_at=now,
            ))
            await db.commit()

    async def _finish_run(self, job_id: int, status: str, stats: RunStats) -> None:
        async with self.session_factory() as db:
            job = await db.get(PredictionRun, job_id)
            if job is None:
                return
            job.status = status
            job.completed_at = datetime.utcnow()
            job.rules_processed = stats.processed
            job.auto_added = stats.auto_added
            job.suggested = stats.suggested
            job.ema_updated = stats.ema_updated
            job.errors = stats.errors
            await db.commit()

    async def _mark_failed(self, job_id: int, stats: RunStats, message: str) -> None:
        try:
            async with self.session_factory() as db:
                job = await db.get(PredictionRun, job_id)
                if job is None:
                    return
                job.status = "failed"
                job.completed_at = datetime.utcnow()
                job.errors = stats.errors
                job.error_message = message[:2000]
                await db.commit()
        except Exception:
            logger.exception(f"Could not record failure for prediction run {job_id}")


def build_runner() -> PredictionRunner:
    """Runner wired to the application database and, if enabled, the Redis lock."""
    return PredictionRunner(
        store=SQLPredictionStore(AsyncSessionLocal),
        session_factory=AsyncSessionLocal,
        lock_manager=run_lock_manager if settings.run_lock_enabled else None,
    )


prediction_runner = build_runner()
