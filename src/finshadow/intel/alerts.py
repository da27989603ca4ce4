# FinShadow Intel - Alert Emitter
#
# Creates alerts from qualifying risk scores and from spike signals.
# Each alert carries a trigger_key that is UNIQUE in the store:
#   risk_score:<score id>          one alert per qualifying RiskScore
#   spike:<metric>:<YYYY-MM-DD>    one spike alert per metric per UTC day
# Re-emitting for the same trigger is a no-op.

import logging
from typing import Iterable, List, Optional

from ..core.audit_log import AuditEvent, AuditLog, NullAuditLog
from .models import Alert, RiskScore, Severity, SpikeSignal
from .store import DuplicateConflict, IntelStore, Predicate

logger = logging.getLogger(__name__)

ALERT_SCORE_THRESHOLD = 70  # strictly greater


def score_trigger_key(score_id: str) -> str:
    return f"risk_score:{score_id}"


def spike_trigger_key(signal: SpikeSignal) -> str:
    return f"spike:{signal.metric}:{signal.detected_at.date().isoformat()}"


class AlertEmitter:
    """Idempotent alert creation."""

    def __init__(self, store: IntelStore, audit: Optional[AuditLog] = None):
        self.store = store
        self.audit = audit or NullAuditLog()

    def emit_for_scores(self, scores: Iterable[RiskScore]) -> List[Alert]:
        created: List[Alert] = []
        for score in scores:
            if score.score <= ALERT_SCORE_THRESHOLD or not score.score_id:
                continue
            record = self.store.get_by_key("threat_intel", "id", score.threat_record_id)
            subject = record["title"] if record else score.threat_record_id
            alert = Alert(
                alert_type="threat",
                title=f"{score.severity.value.capitalize()} threat: {subject}",
                message=score.reasoning,
                severity=score.severity,
                trigger_key=score_trigger_key(score.score_id),
                risk_score_id=score.score_id,
                threat_record_id=score.threat_record_id,
            )
            if self._create(alert):
                created.append(alert)
        return created

    def emit_for_spikes(self, signals: Iterable[SpikeSignal]) -> List[Alert]:
        created: List[Alert] = []
        for signal in signals:
            alert = Alert(
                alert_type="spike",
                title=f"Volume spike in {signal.metric}",
                message=(
                    f"{signal.metric}: {signal.current_value:.0f} in the last 24h "
                    f"vs baseline {signal.baseline_value:.2f}/day "
                    f"(threshold x{signal.spike_threshold:g})"
                ),
                severity=Severity.HIGH,
                trigger_key=spike_trigger_key(signal),
            )
            if self._create(alert):
                created.append(alert)
        return created

    def _create(self, alert: Alert) -> bool:
        if self.store.count_by_predicate(
            "alerts", [Predicate("trigger_key", "=", alert.trigger_key)]
        ):
            return False
        try:
            alert.alert_id = self.store.insert_returning_id("alerts", alert.to_row())
        except DuplicateConflict:
            return False
        self.audit.record(
            AuditEvent.ALERT_CREATED,
            alert_id=alert.alert_id,
            trigger_key=alert.trigger_key,
            severity=alert.severity.value,
            title=alert.title,
        )
        logger.info("Alert created [%s] %s", alert.severity.value, alert.title)
        return True
