# FinShadow Intel - Risk Scorer
#
# Explainable 0-100 risk score for a ThreatRecord.  compute_risk() is a
# pure function: no I/O, no clock reads, and a reasoning string built
# only from ordered inputs, so identical (record, now) always produce
# bit-identical output.
#
# Rule pipeline (fixed order):
#   1. severity_base       critical 80 / high 60 / medium 40 / low 20 / info 5
#   2. domain_relevance    +20 when title, description or tags mention a keyword
#   3. recency_decay       older than 30 days: x max(0.5, 1 - (age - 30) / 180)
#   4. indicator_richness  +10 when more than 5 indicators
#   5. clamp to [0, 100] and round half-up
#   6. severity bucket from the final score
#
# RiskScorer.compute_all_risks() applies it to every record discovered in
# the trailing window and appends one RiskScore row per record.

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..core.audit_log import AuditEvent, AuditLog, NullAuditLog
from ..core.config import DEFAULT_DOMAIN_KEYWORDS
from .models import (
    RiskAssessment,
    RiskScore,
    Severity,
    ThreatRecord,
    severity_from_score,
    to_iso,
    utc_now,
)
from .store import IntelStore, Predicate

logger = logging.getLogger(__name__)

ENGINE_VERSION = "1.0"
SCORE_TTL_DAYS = 7
DEFAULT_WINDOW_DAYS = 7

SEVERITY_BASE_POINTS: Dict[Severity, int] = {
    Severity.CRITICAL: 80,
    Severity.HIGH: 60,
    Severity.MEDIUM: 40,
    Severity.LOW: 20,
    Severity.INFO: 5,
}

DOMAIN_RELEVANCE_BONUS = 20
RECENCY_GRACE_DAYS = 30
RECENCY_DECAY_SPAN_DAYS = 180
RECENCY_DECAY_FLOOR = 0.5
RICHNESS_MIN_INDICATORS = 5  # bonus applies strictly above this
RICHNESS_BONUS = 10


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _fmt(points: float) -> str:
    """Signed points; whole numbers without decimals."""
    if float(points).is_integer():
        return f"{int(points):+d}"
    return f"{points:+.2f}"


def _matched_keywords(record: ThreatRecord, keywords: Iterable[str]) -> List[str]:
    # Fields are matched one at a time; a keyword never spans two fields.
    fields = [(f or "").lower() for f in [record.title, record.description, *record.tags]]
    return sorted({
        k for k in (kw.lower() for kw in keywords)
        if k and any(k in field for field in fields)
    })


def _validate(record: ThreatRecord, now: datetime) -> Severity:
    try:
        severity = Severity(record.severity)
    except ValueError:
        raise ScoringError(f"Unknown severity {record.severity!r}") from None
    if not isinstance(record.discovered_at, datetime):
        raise ScoringError("discovered_at is missing or not a datetime")
    if record.discovered_at.tzinfo is None or now.tzinfo is None:
        raise ScoringError("Timestamps must be timezone-aware")
    if record.indicators is None:
        raise ScoringError("indicators is missing")
    return severity


def compute_risk(
    record: ThreatRecord,
    now: datetime,
    keywords: Iterable[str] = DEFAULT_DOMAIN_KEYWORDS,
) -> RiskAssessment:
    """Score one record at time ``now``.

    Raises:
        ScoringError: If a field needed by a rule is malformed.
    """
    severity = _validate(record, now)
    rules: List[str] = []
    clauses: List[str] = []

    # 1. Severity base
    total = float(SEVERITY_BASE_POINTS[severity])
    rules.append("severity_base")
    clauses.append(f"severity_base: {severity.value} ({_fmt(total)})")

    # 2. Domain relevance
    matched = _matched_keywords(record, keywords)
    if matched:
        total += DOMAIN_RELEVANCE_BONUS
        rules.append("domain_relevance")
        clauses.append(
            f"domain_relevance: matched {', '.join(matched)} "
            f"({_fmt(DOMAIN_RELEVANCE_BONUS)})"
        )

    # 3. Recency decay
    age_days = (now - record.discovered_at).total_seconds() / 86400.0
    if age_days > RECENCY_GRACE_DAYS:
        decay = max(
            RECENCY_DECAY_FLOOR,
            1.0 - (age_days - RECENCY_GRACE_DAYS) / RECENCY_DECAY_SPAN_DAYS,
        )
        penalty = total * (1.0 - decay)
        total *= decay
        rules.append("recency_decay")
        clauses.append(
            f"recency_decay: {age_days:.1f} days old, factor {decay:.3f} "
            f"({_fmt(-round(penalty, 2))})"
        )

    # 4. Indicator richness
    count = len(record.indicators)
    if count > RICHNESS_MIN_INDICATORS:
        total += RICHNESS_BONUS
        rules.append("indicator_richness")
        clauses.append(
            f"indicator_richness: {count} indicators ({_fmt(RICHNESS_BONUS)})"
        )

    # 5-6. Clamp, round, bucket
    score = _round_half_up(min(100.0, max(0.0, total)))
    final_severity = severity_from_score(score)
    clauses.append(f"final score {score} ({final_severity.value})")

    return RiskAssessment(
        score=score,
        severity=final_severity,
        rules_fired=rules,
        reasoning="; ".join(clauses),
    )


class ScoringReport:
    """Summary of one batch scoring run."""

    def __init__(self, started: datetime, window_days: int):
        self.started = to_iso(started)
        self.window_days = window_days
        self.finished: Optional[str] = None
        self.scores: List[RiskScore] = []
        self.skipped: int = 0

    @property
    def scored(self) -> int:
        return len(self.scores)

    def to_dict(self) -> Dict[str, Any]:
        by_severity: Dict[str, int] = {}
        for s in self.scores:
            by_severity[s.severity.value] = by_severity.get(s.severity.value, 0) + 1
        return {
            "started": self.started,
            "finished": self.finished,
            "window_days": self.window_days,
            "scored": self.scored,
            "skipped": self.skipped,
            "by_severity": by_severity,
        }


class RiskScorer:
    """Batch scorer over the records discovered in a trailing window."""

    def __init__(
        self,
        store: IntelStore,
        window_days: int = DEFAULT_WINDOW_DAYS,
        keywords: Iterable[str] = DEFAULT_DOMAIN_KEYWORDS,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.window_days = window_days
        self.keywords = tuple(keywords)
        self.audit = audit or NullAuditLog()

    def compute_all_risks(self, now: Optional[datetime] = None) -> ScoringReport:
        """Score every record in the window and append one RiskScore each.

        Malformed records are skipped and counted.  A PersistenceError
        propagates to the caller and ends the run.
        """
        now = now or utc_now()
        report = ScoringReport(now, self.window_days)
        cutoff = to_iso(now - timedelta(days=self.window_days))

        rows = self.store.query_by_predicate(
            "threat_intel",
            [Predicate("discovered_at", ">=", cutoff)],
            order_by="discovered_at",
        )

        for row in rows:
            try:
                record = ThreatRecord.from_row(row)
                assessment = compute_risk(record, now, self.keywords)
            except (ScoringError, KeyError, TypeError, ValueError) as exc:
                report.skipped += 1
                logger.warning("Skipping record %s: %s", row.get("id"), exc)
                continue

            score = RiskScore(
                threat_record_id=record.record_id,
                score=assessment.score,
                severity=assessment.severity,
                rules_fired=assessment.rules_fired,
                reasoning=assessment.reasoning,
                engine_version=ENGINE_VERSION,
                computed_at=now,
                expires_at=now + timedelta(days=SCORE_TTL_DAYS),
            )
            score.score_id = self.store.insert_returning_id("risk_scores", score.to_row())
            report.scores.append(score)

        report.finished = to_iso(utc_now())
        self.audit.record(AuditEvent.SCORING_RUN, **report.to_dict())
        logger.info(
            "Scoring run complete: %d scored, %d skipped", report.scored, report.skipped
        )
        return report


class ScoringError(Exception):
    """Raised when a record field needed by a scoring rule is malformed."""
