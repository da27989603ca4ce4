"""
Tests for the alert emitter.

Covers: score qualification threshold, severity copying, idempotency
per RiskScore id, spike alerts once per metric per day, audit entries.
"""

from datetime import datetime, timedelta, timezone

import pytest

from finshadow.intel.alerts import (
    ALERT_SCORE_THRESHOLD,
    AlertEmitter,
    score_trigger_key,
    spike_trigger_key,
)
from finshadow.intel.dedup import Deduplicator
from finshadow.intel.models import (
    Indicator,
    RiskScore,
    Severity,
    SpikeSignal,
    ThreatRecord,
    ThreatType,
    severity_from_score,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _persisted_score(store, score_value: int, title="Card skimmer kit") -> RiskScore:
    rec = ThreatRecord(
        source="Feed A",
        title=title,
        type=ThreatType.DOMAIN,
        severity=Severity.HIGH,
        indicators=[Indicator("domain", "skim.example")],
        content_hash=f"{title}-{score_value}",
        first_seen=NOW,
        last_seen=NOW,
        discovered_at=NOW,
    )
    Deduplicator(store).insert_or_touch(rec, NOW)
    score = RiskScore(
        threat_record_id=rec.record_id,
        score=score_value,
        severity=severity_from_score(score_value),
        rules_fired=["severity_base"],
        reasoning=f"final score {score_value}",
        engine_version="1.0",
        computed_at=NOW,
    )
    score.score_id = store.insert_returning_id("risk_scores", score.to_row())
    return score


def _signal(metric="total_intel_count", when=NOW) -> SpikeSignal:
    return SpikeSignal(metric, 10.0, 16.0, 1.5, when)


class TestScoreAlerts:
    def test_qualifying_score_creates_alert(self, store):
        score = _persisted_score(store, 91)
        alerts = AlertEmitter(store).emit_for_scores([score])
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.severity is Severity.CRITICAL
        assert alert.risk_score_id == score.score_id
        assert alert.threat_record_id == score.threat_record_id
        assert alert.message == score.reasoning
        assert "Card skimmer kit" in alert.title
        row = store.get_by_key("alerts", "trigger_key", score_trigger_key(score.score_id))
        assert row["read"] == 0

    def test_high_severity_copied(self, store):
        score = _persisted_score(store, 75)
        assert AlertEmitter(store).emit_for_scores([score])[0].severity is Severity.HIGH

    @pytest.mark.parametrize("value", [ALERT_SCORE_THRESHOLD, 40, 0])
    def test_non_qualifying_scores(self, store, value):
        score = _persisted_score(store, value)
        assert AlertEmitter(store).emit_for_scores([score]) == []
        assert store.count_by_predicate("alerts") == 0

    def test_idempotent_per_score(self, store):
        score = _persisted_score(store, 95)
        emitter = AlertEmitter(store)
        assert len(emitter.emit_for_scores([score])) == 1
        assert emitter.emit_for_scores([score]) == []
        assert AlertEmitter(store).emit_for_scores([score, score]) == []
        assert store.count_by_predicate("alerts") == 1

    def test_unsaved_score_ignored(self, store):
        score = _persisted_score(store, 95)
        score.score_id = None
        assert AlertEmitter(store).emit_for_scores([score]) == []


class TestSpikeAlerts:
    def test_spike_alert(self, store):
        alerts = AlertEmitter(store).emit_for_spikes([_signal()])
        assert len(alerts) == 1
        assert alerts[0].severity is Severity.HIGH
        assert alerts[0].alert_type == "spike"
        assert alerts[0].trigger_key == "spike:total_intel_count:2024-06-01"

    def test_once_per_metric_per_day(self, store):
        emitter = AlertEmitter(store)
        emitter.emit_for_spikes([_signal()])
        assert emitter.emit_for_spikes([_signal(when=NOW + timedelta(hours=3))]) == []
        assert len(emitter.emit_for_spikes([_signal(when=NOW + timedelta(days=1))])) == 1
        assert len(emitter.emit_for_spikes([_signal(metric="critical_intel_count")])) == 1
        assert store.count_by_predicate("alerts") == 3

    def test_trigger_key_format(self):
        assert spike_trigger_key(_signal()) == "spike:total_intel_count:2024-06-01"
        assert score_trigger_key("abc") == "risk_score:abc"
