# FinShadow Intel - Threat Intelligence Pipeline
#
# Feed ingestion (fetch, normalize, dedup, persist), explainable risk
# scoring, baseline spike detection and idempotent alerting.

from .models import (
    Alert,
    BaselineMetric,
    FormatTag,
    Indicator,
    RiskAssessment,
    RiskScore,
    Severity,
    SpikeSignal,
    ThreatRecord,
    ThreatType,
    severity_from_score,
)
from .sources import DEFAULT_SOURCES, FeedSource, SourceConfigError, SourceRegistry, load_sources
from .fetcher import FeedFetcher, FetchError
from .normalizer import (
    NormalizationError,
    compute_content_hash,
    infer_threat_type,
    normalize_item,
    normalize_payload,
)
from .store import DuplicateConflict, IntelStore, PersistenceError, Predicate
from .dedup import Deduplicator
from .ingestion import IngestionOrchestrator, IngestionReport, IngestionState, SourceRunResult
from .risk_scorer import ENGINE_VERSION, RiskScorer, ScoringError, ScoringReport, compute_risk
from .baseline import DEFAULT_METRICS, BaselineTracker, MetricDefinition, is_spike
from .alerts import AlertEmitter
from .scheduler import PipelineScheduler, RepeatingTask

__all__ = [
    "Alert",
    "BaselineMetric",
    "FormatTag",
    "Indicator",
    "RiskAssessment",
    "RiskScore",
    "Severity",
    "SpikeSignal",
    "ThreatRecord",
    "ThreatType",
    "severity_from_score",
    "DEFAULT_SOURCES",
    "FeedSource",
    "SourceConfigError",
    "SourceRegistry",
    "load_sources",
    "FeedFetcher",
    "FetchError",
    "NormalizationError",
    "compute_content_hash",
    "infer_threat_type",
    "normalize_item",
    "normalize_payload",
    "DuplicateConflict",
    "IntelStore",
    "PersistenceError",
    "Predicate",
    "Deduplicator",
    "IngestionOrchestrator",
    "IngestionReport",
    "IngestionState",
    "SourceRunResult",
    "ENGINE_VERSION",
    "RiskScorer",
    "ScoringError",
    "ScoringReport",
    "compute_risk",
    "DEFAULT_METRICS",
    "BaselineTracker",
    "MetricDefinition",
    "is_spike",
    "AlertEmitter",
    "PipelineScheduler",
    "RepeatingTask",
]
