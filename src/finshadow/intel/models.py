# FinShadow Intel - Data Models
#
# Canonical shapes flowing through the pipeline:
#   ThreatRecord   - one normalized threat-intel item (identity = content_hash)
#   RiskScore      - explainable 0-100 score appended per scoring run
#   BaselineMetric - named rolling volume metric, upserted by name
#   Alert          - notification row created from a score or a spike
#
# Timestamps are timezone-aware UTC datetimes in memory and ISO 8601
# strings (microsecond precision) at rest, so lexical order in SQLite
# matches chronological order.

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ThreatType(str, Enum):
    """Classification of a threat record, derived from its indicators."""

    MALWARE = "malware"
    IP = "ip"
    DOMAIN = "domain"
    HASH = "hash"
    ACTOR = "actor"
    MALICIOUS_URL = "malicious_url"


class Severity(str, Enum):
    """Severity shared by records, risk scores and alerts."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class FormatTag(str, Enum):
    """Payload shape of an upstream feed.  Each tag has its own normalizer."""

    OTX_PULSE = "otx_pulse"
    THREATFOX = "threatfox"
    URLHAUS = "urlhaus"
    CANONICAL_JSON = "canonical_json"


# Score -> severity bucket thresholds (inclusive lower bounds)
CRITICAL_SCORE = 85
HIGH_SCORE = 70
MEDIUM_SCORE = 40


def severity_from_score(score: int) -> Severity:
    """Map a 0-100 risk score to its severity bucket."""
    if score >= CRITICAL_SCORE:
        return Severity.CRITICAL
    if score >= HIGH_SCORE:
        return Severity.HIGH
    if score >= MEDIUM_SCORE:
        return Severity.MEDIUM
    return Severity.LOW


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO 8601 string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Indicator:
    """A typed atomic observable (IP, domain, hash, URL) as the feed named it."""

    type: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "value": self.value}


@dataclass
class ThreatRecord:
    """Canonical normalized representation of one ingested intel item.

    ``content_hash`` is the identity: two records with the same hash are
    the same threat, whichever feed or run produced them.
    """

    source: str
    title: str
    type: ThreatType
    severity: Severity
    first_seen: datetime
    last_seen: datetime
    discovered_at: datetime
    content_hash: str = ""
    description: str = ""
    source_id: Optional[str] = None
    source_url: Optional[str] = None
    indicators: List[Indicator] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    record_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "source_id": self.source_id,
            "source_url": self.source_url,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "severity": self.severity.value,
            "indicators": [i.to_dict() for i in self.indicators],
            "tags": sorted(self.tags),
            "content_hash": self.content_hash,
            "first_seen": to_iso(self.first_seen),
            "last_seen": to_iso(self.last_seen),
            "discovered_at": to_iso(self.discovered_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ThreatRecord":
        indicators = row.get("indicators") or []
        if isinstance(indicators, str):
            indicators = json.loads(indicators)
        tags = row.get("tags") or []
        if isinstance(tags, str):
            tags = json.loads(tags)
        return cls(
            record_id=row.get("id"),
            source=row["source"],
            source_id=row.get("source_id"),
            source_url=row.get("source_url"),
            title=row["title"],
            description=row.get("description") or "",
            type=ThreatType(row["type"]),
            severity=Severity(row["severity"]),
            indicators=[Indicator(i["type"], i["value"]) for i in indicators],
            tags=list(tags),
            content_hash=row["content_hash"],
            first_seen=from_iso(row["first_seen"]),
            last_seen=from_iso(row["last_seen"]),
            discovered_at=from_iso(row["discovered_at"]),
        )


@dataclass
class RiskAssessment:
    """Output of the pure scoring function for one record."""

    score: int
    severity: Severity
    rules_fired: List[str]
    reasoning: str


@dataclass
class RiskScore:
    """A persisted RiskScore row.  History is appended, never overwritten."""

    threat_record_id: str
    score: int
    severity: Severity
    rules_fired: List[str]
    reasoning: str
    engine_version: str
    computed_at: datetime
    expires_at: Optional[datetime] = None
    score_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "threat_intel_id": self.threat_record_id,
            "score": self.score,
            "severity": self.severity.value,
            "rules_fired": list(self.rules_fired),
            "reasoning": self.reasoning,
            "engine_version": self.engine_version,
            "computed_at": to_iso(self.computed_at),
            "expires_at": to_iso(self.expires_at) if self.expires_at else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RiskScore":
        rules = row.get("rules_fired") or []
        if isinstance(rules, str):
            rules = json.loads(rules)
        return cls(
            score_id=row.get("id"),
            threat_record_id=row["threat_intel_id"],
            score=int(row["score"]),
            severity=Severity(row["severity"]),
            rules_fired=list(rules),
            reasoning=row["reasoning"],
            engine_version=row["engine_version"],
            computed_at=from_iso(row["computed_at"]),
            expires_at=from_iso(row.get("expires_at")),
        )


@dataclass
class BaselineMetric:
    """Named volume baseline.  One row per metric name."""

    metric: str
    window_days: int
    baseline_value: float
    current_value: float
    spike_threshold: float
    calculated_at: datetime
    updated_at: datetime

    @property
    def is_spike(self) -> bool:
        return self.current_value > self.baseline_value * self.spike_threshold

    def to_row(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "window_days": self.window_days,
            "baseline_value": round(self.baseline_value, 2),
            "current_value": round(self.current_value, 2),
            "spike_threshold": self.spike_threshold,
            "calculated_at": to_iso(self.calculated_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class SpikeSignal:
    """Handed to the alert emitter when a metric exceeds its baseline."""

    metric: str
    baseline_value: float
    current_value: float
    spike_threshold: float
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["detected_at"] = to_iso(self.detected_at)
        return d


@dataclass
class Alert:
    """Notification row.  ``trigger_key`` is unique per triggering event."""

    alert_type: str  # "threat" | "spike"
    title: str
    message: str
    severity: Severity
    trigger_key: str
    risk_score_id: Optional[str] = None
    threat_record_id: Optional[str] = None
    read: bool = False
    created_at: datetime = field(default_factory=utc_now)
    alert_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "read": 1 if self.read else 0,
            "trigger_key": self.trigger_key,
            "risk_score_id": self.risk_score_id,
            "threat_intel_id": self.threat_record_id,
            "created_at": to_iso(self.created_at),
        }
