"""
Tests for intel data models.

Covers: severity buckets, timestamp serialization, ThreatRecord and
RiskScore row mapping, BaselineMetric spike condition, Alert rows.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from finshadow.intel.models import (
    Alert,
    BaselineMetric,
    Indicator,
    RiskScore,
    Severity,
    SpikeSignal,
    ThreatRecord,
    ThreatType,
    from_iso,
    severity_from_score,
    to_iso,
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(**overrides) -> ThreatRecord:
    fields = dict(
        source="AlienVault OTX",
        source_id="abc123",
        title="Banking trojan C2",
        description="C2 infrastructure",
        type=ThreatType.IP,
        severity=Severity.HIGH,
        indicators=[Indicator("IPv4", "1.2.3.4"), Indicator("domain", "evil.example")],
        tags=["banking", "apt"],
        content_hash="f" * 64,
        first_seen=NOW,
        last_seen=NOW,
        discovered_at=NOW,
    )
    fields.update(overrides)
    return ThreatRecord(**fields)


# ===================================================================
# Severity buckets
# ===================================================================

class TestSeverityFromScore:
    @pytest.mark.parametrize(
        "score,expected",
        [
            (100, Severity.CRITICAL),
            (85, Severity.CRITICAL),
            (84, Severity.HIGH),
            (70, Severity.HIGH),
            (69, Severity.MEDIUM),
            (40, Severity.MEDIUM),
            (39, Severity.LOW),
            (0, Severity.LOW),
        ],
    )
    def test_thresholds(self, score, expected):
        assert severity_from_score(score) is expected

    def test_never_info(self):
        assert all(severity_from_score(s) is not Severity.INFO for s in range(101))


# ===================================================================
# Timestamps
# ===================================================================

class TestTimestamps:
    def test_naive_treated_as_utc(self):
        assert to_iso(datetime(2024, 1, 1)) == "2024-01-01T00:00:00.000000+00:00"

    def test_offset_converted_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        assert to_iso(datetime(2024, 1, 1, 2, 0, tzinfo=plus_two)).startswith(
            "2024-01-01T00:00:00"
        )

    def test_fixed_width_sorts_chronologically(self):
        a = to_iso(NOW)
        b = to_iso(NOW + timedelta(microseconds=1))
        assert a < b

    def test_from_iso_z_suffix(self):
        assert from_iso("2024-06-01T12:00:00Z") == NOW

    def test_from_iso_empty(self):
        assert from_iso(None) is None
        assert from_iso("") is None


# ===================================================================
# Row mapping
# ===================================================================

class TestThreatRecordRows:
    def test_to_row_serializes_enums_and_times(self):
        row = _record().to_row()
        assert row["type"] == "ip"
        assert row["severity"] == "high"
        assert row["discovered_at"] == to_iso(NOW)
        assert row["tags"] == ["apt", "banking"]
        assert row["indicators"][0] == {"type": "IPv4", "value": "1.2.3.4"}

    def test_from_row_accepts_json_text(self):
        row = _record().to_row()
        row["id"] = "rec-1"
        row["indicators"] = json.dumps(row["indicators"])
        row["tags"] = json.dumps(row["tags"])
        rec = ThreatRecord.from_row(row)
        assert rec.record_id == "rec-1"
        assert rec.type is ThreatType.IP
        assert rec.indicators[1] == Indicator("domain", "evil.example")
        assert rec.discovered_at == NOW

    def test_from_row_rejects_unknown_severity(self):
        row = _record().to_row()
        row["severity"] = "apocalyptic"
        with pytest.raises(ValueError):
            ThreatRecord.from_row(row)


class TestRiskScoreRows:
    def test_round_trip(self):
        score = RiskScore(
            threat_record_id="rec-1",
            score=91,
            severity=Severity.CRITICAL,
            rules_fired=["severity_base", "domain_relevance"],
            reasoning="severity_base: high (+60)",
            engine_version="1.0",
            computed_at=NOW,
            expires_at=NOW + timedelta(days=7),
        )
        row = score.to_row()
        row["id"] = "score-1"
        row["rules_fired"] = json.dumps(row["rules_fired"])
        back = RiskScore.from_row(row)
        assert back.score_id == "score-1"
        assert back.rules_fired == ["severity_base", "domain_relevance"]
        assert back.expires_at == NOW + timedelta(days=7)


class TestBaselineMetric:
    def _metric(self, current):
        return BaselineMetric(
            metric="total_intel_count",
            window_days=30,
            baseline_value=10.0,
            current_value=current,
            spike_threshold=1.5,
            calculated_at=NOW,
            updated_at=NOW,
        )

    def test_spike_above_threshold(self):
        assert self._metric(16).is_spike is True

    def test_no_spike_below_threshold(self):
        assert self._metric(14).is_spike is False

    def test_equal_is_not_spike(self):
        assert self._metric(15).is_spike is False


class TestAlertAndSignal:
    def test_alert_row(self):
        alert = Alert(
            alert_type="threat",
            title="t",
            message="m",
            severity=Severity.HIGH,
            trigger_key="risk_score:abc",
            created_at=NOW,
        )
        row = alert.to_row()
        assert row["read"] == 0
        assert row["severity"] == "high"
        assert row["trigger_key"] == "risk_score:abc"

    def test_signal_to_dict(self):
        sig = SpikeSignal("total_intel_count", 10.0, 16.0, 1.5, NOW)
        assert sig.to_dict()["detected_at"] == to_iso(NOW)
