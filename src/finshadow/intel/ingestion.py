# FinShadow Intel - Ingestion Orchestrator
#
# Coordinates fetch -> normalize -> dedup -> persist per feed source:
#   - Sources run in parallel on a ThreadPoolExecutor; steps within one
#     source are strictly sequential
#   - Only sources whose poll interval elapsed are polled, unless forced
#   - A FetchError or NormalizationError is counted against its source
#     and the run continues with the other sources
#   - A PersistenceError aborts the run; sources not yet started are
#     skipped and the report is marked aborted
#   - Each report goes to the audit trail and the on_complete callback

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.audit_log import AuditEvent, AuditLog, NullAuditLog
from ..core.config import DEFAULT_DOMAIN_KEYWORDS
from .dedup import Deduplicator
from .fetcher import FeedFetcher, FetchError
from .models import to_iso, utc_now
from .normalizer import NormalizationError, normalize_payload
from .sources import FeedSource, SourceRegistry
from .store import IntelStore, PersistenceError

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DEDUPING = "deduping"
    PERSISTING = "persisting"


class SourceRunResult:
    """Outcome of one source within an ingestion run."""

    def __init__(self, source_id: str):
        self.source_id = source_id
        self.inserted: int = 0
        self.duplicates: int = 0
        self.errors: int = 0
        self.fetch_error: Optional[str] = None
        self.duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.fetch_error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source_id,
            "success": self.success,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "fetch_error": self.fetch_error,
            "duration_ms": round(self.duration_ms, 1),
        }


class IngestionReport:
    """Summary of one ingestion run."""

    def __init__(self, started: datetime):
        self.started = to_iso(started)
        self.finished: Optional[str] = None
        self.aborted: bool = False
        self.abort_reason: Optional[str] = None
        self.results: List[SourceRunResult] = []

    @property
    def total_inserted(self) -> int:
        return sum(r.inserted for r in self.results)

    @property
    def total_duplicates(self) -> int:
        return sum(r.duplicates for r in self.results)

    @property
    def total_errors(self) -> int:
        return sum(r.errors for r in self.results)

    @property
    def sources_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "finished": self.finished,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "sources_polled": len(self.results),
            "sources_failed": self.sources_failed,
            "total_inserted": self.total_inserted,
            "total_duplicates": self.total_duplicates,
            "total_errors": self.total_errors,
            "results": [r.to_dict() for r in self.results],
        }


class IngestionOrchestrator:
    """Runs ingestion cycles over a source registry.

    Usage::

        orch = IngestionOrchestrator(registry, store)
        report = orch.run()              # poll due sources
        report = orch.run(force=True)    # manual trigger, poll everything
    """

    def __init__(
        self,
        registry: SourceRegistry,
        store: IntelStore,
        fetcher: Optional[FeedFetcher] = None,
        audit: Optional[AuditLog] = None,
        max_workers: int = 4,
        keywords: Iterable[str] = DEFAULT_DOMAIN_KEYWORDS,
        on_complete: Optional[Callable[[IngestionReport], None]] = None,
    ):
        self.registry = registry
        self.store = store
        self.fetcher = fetcher or FeedFetcher()
        self.dedup = Deduplicator(store)
        self.audit = audit or NullAuditLog()
        self.max_workers = max_workers
        self.keywords = tuple(keywords)
        self.on_complete = on_complete

        self._lock = threading.Lock()
        self._states: Dict[str, IngestionState] = {
            s.source_id: IngestionState.IDLE for s in registry
        }
        self._last_polled: Dict[str, datetime] = {}
        self._abort = threading.Event()
        self.last_report: Optional[IngestionReport] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state_of(self, source_id: str) -> IngestionState:
        with self._lock:
            return self._states.get(source_id, IngestionState.IDLE)

    def states(self) -> Dict[str, str]:
        with self._lock:
            return {k: v.value for k, v in self._states.items()}

    def _set_state(self, source_id: str, state: IngestionState) -> None:
        with self._lock:
            self._states[source_id] = state

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, now: Optional[datetime] = None, force: bool = False) -> IngestionReport:
        """Execute one ingestion cycle and return its report."""
        now = now or utc_now()
        report = IngestionReport(now)
        self._abort.clear()

        with self._lock:
            last_polled = dict(self._last_polled)
        sources = list(self.registry) if force else self.registry.due(now, last_polled)

        if not sources:
            logger.debug("No feed sources due")
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = {
                    pool.submit(self._run_source, source, now, report): source
                    for source in sources
                }
                for future in as_completed(futures):
                    result = future.result()
                    if result is not None:
                        report.results.append(result)
            report.results.sort(key=lambda r: r.source_id)

        report.finished = to_iso(utc_now())
        self._finalize(report)
        return report

    def _run_source(
        self,
        source: FeedSource,
        now: datetime,
        report: IngestionReport,
    ) -> Optional[SourceRunResult]:
        if self._abort.is_set():
            return None

        result = SourceRunResult(source.source_id)
        start = time.monotonic()
        with self._lock:
            self._last_polled[source.source_id] = now

        try:
            self._set_state(source.source_id, IngestionState.FETCHING)
            payload = self.fetcher.fetch(source)

            self._set_state(source.source_id, IngestionState.NORMALIZING)
            records, errors = normalize_payload(payload, source, now, self.keywords)
            result.errors += errors

            for record in records:
                if self._abort.is_set():
                    break
                self._set_state(source.source_id, IngestionState.DEDUPING)
                if self.dedup.is_duplicate(record.content_hash):
                    self.dedup.record_sighting(record.content_hash, now)
                    result.duplicates += 1
                    continue
                self._set_state(source.source_id, IngestionState.PERSISTING)
                if self.dedup.insert_new(record, now):
                    result.inserted += 1
                else:
                    result.duplicates += 1

        except FetchError as exc:
            result.fetch_error = str(exc)
            result.errors += 1
            logger.warning("Fetch failed for %s: %s", source.source_id, exc)
        except NormalizationError as exc:
            result.errors += 1
            logger.warning("Payload from %s rejected: %s", source.source_id, exc)
        except (TypeError, ValueError) as exc:
            result.errors += 1
            logger.exception("Unexpected payload shape from %s: %s", source.source_id, exc)
        except PersistenceError as exc:
            logger.error("Aborting ingestion run, store failed: %s", exc)
            with self._lock:
                if not report.aborted:
                    report.aborted = True
                    report.abort_reason = str(exc)
            self._abort.set()
        finally:
            self._set_state(source.source_id, IngestionState.IDLE)
            result.duration_ms = (time.monotonic() - start) * 1000

        logger.info(
            "%s: inserted=%d duplicates=%d errors=%d",
            source.source_id, result.inserted, result.duplicates, result.errors,
        )
        return result

    def _finalize(self, report: IngestionReport) -> None:
        self.last_report = report
        self.audit.record(AuditEvent.INGESTION_RUN, **report.to_dict())
        if report.aborted:
            logger.error("Ingestion run aborted: %s", report.abort_reason)
        else:
            logger.info(
                "Ingestion run complete: %d sources, %d inserted, %d duplicates, %d errors",
                len(report.results), report.total_inserted,
                report.total_duplicates, report.total_errors,
            )
        if self.on_complete is not None:
            try:
                self.on_complete(report)
            except Exception:
                logger.exception("on_complete callback failed")
