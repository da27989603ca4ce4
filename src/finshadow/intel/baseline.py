# FinShadow Intel - Baseline Tracker / Spike Detector
#
# Named volume metrics over threat_intel, keyed by discovered_at:
#   baseline = count(matching records discovered before the window) / window_days
#   current  = count(matching records discovered in the last 24 hours)
#   spike    = current > baseline * spike_threshold
#
# The baseline is a coarse daily rate over all history before the
# window, not a moving average.  A metric with no history (baseline 0)
# spikes as soon as any matching record arrives.
#
# Each run upserts one baseline_metrics row per metric name in a single
# statement, so overlapping runs cannot lose updates.

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from ..core.audit_log import AuditEvent, AuditLog, NullAuditLog
from ..core.config import DEFAULT_DOMAIN_KEYWORDS
from .models import BaselineMetric, SpikeSignal, to_iso, utc_now
from .store import IntelStore, Predicate

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30
DEFAULT_SPIKE_THRESHOLD = 1.5
CURRENT_PERIOD = timedelta(hours=24)


def is_spike(current: float, baseline: float, threshold: float) -> bool:
    return current > baseline * threshold


@dataclass(frozen=True)
class MetricDefinition:
    """A named count over threat_intel rows matching ``predicates``."""

    name: str
    predicates: Tuple[Predicate, ...] = ()
    window_days: int = DEFAULT_WINDOW_DAYS
    spike_threshold: float = DEFAULT_SPIKE_THRESHOLD


def default_metrics(keywords: Iterable[str] = DEFAULT_DOMAIN_KEYWORDS) -> List[MetricDefinition]:
    return [
        MetricDefinition("total_intel_count"),
        MetricDefinition(
            "critical_intel_count", (Predicate("severity", "=", "critical"),)
        ),
        MetricDefinition("malware_intel_count", (Predicate("type", "=", "malware"),)),
        MetricDefinition(
            "fintech_intel_count",
            (Predicate("title", "contains_any", tuple(keywords)),),
        ),
    ]


DEFAULT_METRICS: List[MetricDefinition] = default_metrics()


class BaselineTracker:
    """Recalculates metric baselines and reports spikes."""

    def __init__(
        self,
        store: IntelStore,
        metrics: Optional[Sequence[MetricDefinition]] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.metrics = list(metrics) if metrics is not None else list(DEFAULT_METRICS)
        self.audit = audit or NullAuditLog()

    def measure(self, definition: MetricDefinition, now: datetime) -> BaselineMetric:
        """Compute (without persisting) the current state of one metric."""
        window_start = to_iso(now - timedelta(days=definition.window_days))
        current_start = to_iso(now - CURRENT_PERIOD)
        base = list(definition.predicates)

        historical = self.store.count_by_predicate(
            "threat_intel", base + [Predicate("discovered_at", "<", window_start)]
        )
        current = self.store.count_by_predicate(
            "threat_intel",
            base + [
                Predicate("discovered_at", ">=", current_start),
                Predicate("discovered_at", "<=", to_iso(now)),
            ],
        )
        return BaselineMetric(
            metric=definition.name,
            window_days=definition.window_days,
            baseline_value=historical / definition.window_days,
            current_value=float(current),
            spike_threshold=definition.spike_threshold,
            calculated_at=now,
            updated_at=now,
        )

    def detect_spikes(self, now: Optional[datetime] = None) -> List[SpikeSignal]:
        """Upsert every metric and return a signal for each one spiking."""
        now = now or utc_now()
        signals: List[SpikeSignal] = []

        for definition in self.metrics:
            metric = self.measure(definition, now)
            self.store.upsert_by_key("baseline_metrics", "metric", metric.to_row())

            if not metric.is_spike:
                logger.debug(
                    "%s: current=%.0f baseline=%.2f", metric.metric,
                    metric.current_value, metric.baseline_value,
                )
                continue

            signal = SpikeSignal(
                metric=metric.metric,
                baseline_value=metric.baseline_value,
                current_value=metric.current_value,
                spike_threshold=metric.spike_threshold,
                detected_at=now,
            )
            signals.append(signal)
            self.audit.record(AuditEvent.SPIKE_DETECTED, **signal.to_dict())
            logger.warning(
                "Spike in %s: current=%.0f baseline=%.2f threshold=x%.2f",
                metric.metric, metric.current_value,
                metric.baseline_value, metric.spike_threshold,
            )

        return signals
