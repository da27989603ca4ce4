# FinShadow Intel - Pipeline Scheduler
#
# Timer-driven background runs of the three pipeline stages:
#   ingestion   - poll due feed sources
#   scoring     - score the trailing window, then emit threat alerts
#   spikes      - recalculate baselines, then emit spike alerts
#
# Each stage is a RepeatingTask owning a non-reentrant run lock: a
# scheduled tick that finds the previous run of the same stage still
# in flight is skipped, never overlapped.  APScheduler drives the ticks
# (max_instances=1, coalesce=True) but the lock holds independently of
# the scheduler, so manual triggers from the CLI obey it too.

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.config import Settings
from .alerts import AlertEmitter
from .baseline import BaselineTracker
from .ingestion import IngestionOrchestrator
from .models import to_iso
from .risk_scorer import RiskScorer

logger = logging.getLogger(__name__)

STAGE_INGESTION = "ingestion"
STAGE_SCORING = "scoring"
STAGE_SPIKES = "spikes"


class RepeatingTask:
    """A named unit of periodic work guarded by a run lock.

    Args:
        name: Stage name, used as the scheduler job id.
        func: Callable doing one run.
        interval_seconds: Period between scheduled runs.
    """

    def __init__(self, name: str, func: Callable[[], Any], interval_seconds: float):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self._run_lock = threading.Lock()
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self.last_started: Optional[str] = None
        self.last_duration_ms: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(self) -> Optional[Any]:
        """Scheduled entry point.  Skips when the previous run is still active."""
        if not self._run_lock.acquire(blocking=False):
            self.skipped += 1
            logger.warning("%s: previous run still in progress, skipping", self.name)
            return None
        try:
            return self._execute()
        finally:
            self._run_lock.release()

    def trigger(self, **kwargs: Any) -> Any:
        """Manual entry point.  Waits for an in-flight run, then runs.

        Keyword arguments are passed through to ``func``.
        """
        with self._run_lock:
            return self._execute(**kwargs)

    def _execute(self, **kwargs: Any) -> Any:
        self.last_started = to_iso(datetime.now(timezone.utc))
        start = time.monotonic()
        try:
            result = self.func(**kwargs)
        except Exception as exc:
            self.failures += 1
            self.last_error = str(exc)
            logger.exception("%s run failed", self.name)
            raise
        finally:
            self.runs += 1
            self.last_duration_ms = (time.monotonic() - start) * 1000
        self.last_error = None
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self.is_running,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "last_started": self.last_started,
            "last_duration_ms": (
                round(self.last_duration_ms, 1) if self.last_duration_ms is not None else None
            ),
            "last_error": self.last_error,
        }


class PipelineScheduler:
    """Registers the pipeline stages as interval jobs.

    Usage::

        sched = PipelineScheduler(settings, orchestrator, scorer, tracker, emitter)
        sched.start()
        sched.run_stage("scoring")   # manual run, respects the stage lock
        sched.stop()
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: IngestionOrchestrator,
        scorer: RiskScorer,
        tracker: BaselineTracker,
        emitter: AlertEmitter,
    ):
        self.orchestrator = orchestrator
        self.scorer = scorer
        self.tracker = tracker
        self.emitter = emitter
        self._scheduler: Optional[BackgroundScheduler] = None

        self.tasks: Dict[str, RepeatingTask] = {
            STAGE_INGESTION: RepeatingTask(
                STAGE_INGESTION, self._ingest, settings.ingest_interval_minutes * 60
            ),
            STAGE_SCORING: RepeatingTask(
                STAGE_SCORING, self._score, settings.scoring_interval_minutes * 60
            ),
            STAGE_SPIKES: RepeatingTask(
                STAGE_SPIKES, self._detect_spikes, settings.spike_interval_minutes * 60
            ),
        }

    # ------------------------------------------------------------------
    # Stage bodies
    # ------------------------------------------------------------------

    def _ingest(self, force: bool = False):
        return self.orchestrator.run(force=force)

    def _score(self):
        report = self.scorer.compute_all_risks()
        alerts = self.emitter.emit_for_scores(report.scores)
        return {"scoring": report.to_dict(), "alerts_created": len(alerts)}

    def _detect_spikes(self):
        signals = self.tracker.detect_spikes()
        alerts = self.emitter.emit_for_spikes(signals)
        return {
            "spikes": [s.to_dict() for s in signals],
            "alerts_created": len(alerts),
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background scheduler.  Ingestion runs right away."""
        if self._scheduler is not None:
            return

        self._scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
        now = datetime.now(timezone.utc)
        for task in self.tasks.values():
            first_run = now if task.name == STAGE_INGESTION else now + timedelta(seconds=5)
            self._scheduler.add_job(
                task.run,
                trigger=IntervalTrigger(seconds=task.interval_seconds, timezone="UTC"),
                id=f"finshadow_{task.name}",
                name=f"FinShadow {task.name} stage",
                next_run_time=first_run,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self._scheduler.start()
        logger.info(
            "Pipeline scheduler started: %s",
            ", ".join(f"{t.name} every {t.interval_seconds:g}s" for t in self.tasks.values()),
        )

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Pipeline scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_stage(self, name: str, force: bool = False) -> Any:
        """Run one stage now, waiting for any in-flight run of it.

        ``force`` applies to ingestion only and polls every source.
        """
        task = self.tasks.get(name)
        if task is None:
            raise KeyError(f"Unknown stage: {name!r}")
        if name == STAGE_INGESTION and force:
            return task.trigger(force=True)
        return task.trigger()

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "stages": {name: t.to_dict() for name, t in self.tasks.items()},
            "sources": self.orchestrator.states(),
        }
