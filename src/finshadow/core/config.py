# FinShadow Core - Settings
#
# Runtime configuration for the intel pipeline.  Values come from the
# process environment, optionally seeded from a ``.env`` file via
# python-dotenv.  Feed descriptors live in a separate JSON file
# (FINSHADOW_SOURCES_FILE) and are validated by the source registry.

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "./data/finshadow_intel.db"
DEFAULT_AUDIT_LOG = "./data/finshadow_audit.log"

# Domain-relevance keywords.  Shared by the normalizer's tag allow-list,
# the risk scorer's relevance bonus and the fintech baseline metric.
DEFAULT_DOMAIN_KEYWORDS: Tuple[str, ...] = (
    "bank",
    "carding",
    "credit card",
    "crypto",
    "finance",
    "financial",
    "fintech",
    "fraud",
    "payment",
    "swift",
    "wallet",
)


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _csv_from_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    items = tuple(sorted({p.strip().lower() for p in raw.split(",") if p.strip()}))
    return items or default


@dataclass
class Settings:
    """Pipeline settings.  Intervals are in minutes, timeouts in seconds."""

    db_path: str = DEFAULT_DB_PATH
    audit_log: str = DEFAULT_AUDIT_LOG
    sources_file: Optional[str] = None

    ingest_interval_minutes: int = 15
    scoring_interval_minutes: int = 60
    spike_interval_minutes: int = 60

    fetch_timeout_seconds: int = 30
    max_workers: int = 4
    scoring_window_days: int = 7

    domain_keywords: Tuple[str, ...] = DEFAULT_DOMAIN_KEYWORDS
    log_level: str = "INFO"

    # Names of env vars that were read, for ``stats`` output
    loaded_from: List[str] = field(default_factory=list)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build ``Settings`` from the environment.

    Args:
        env_file: Optional path to a dotenv file.  When omitted,
            python-dotenv searches for ``.env`` from the working directory.
            Variables already present in the environment win.

    Raises:
        ValueError: If a numeric setting is not a positive integer.
    """
    load_dotenv(env_file, override=False)

    loaded = sorted(k for k in os.environ if k.startswith("FINSHADOW_"))

    settings = Settings(
        db_path=os.environ.get("FINSHADOW_DB_PATH", DEFAULT_DB_PATH),
        audit_log=os.environ.get("FINSHADOW_AUDIT_LOG", DEFAULT_AUDIT_LOG),
        sources_file=os.environ.get("FINSHADOW_SOURCES_FILE") or None,
        ingest_interval_minutes=_int_from_env("FINSHADOW_INGEST_INTERVAL_MINUTES", 15),
        scoring_interval_minutes=_int_from_env("FINSHADOW_SCORING_INTERVAL_MINUTES", 60),
        spike_interval_minutes=_int_from_env("FINSHADOW_SPIKE_INTERVAL_MINUTES", 60),
        fetch_timeout_seconds=_int_from_env("FINSHADOW_FETCH_TIMEOUT", 30),
        max_workers=_int_from_env("FINSHADOW_MAX_WORKERS", 4),
        scoring_window_days=_int_from_env("FINSHADOW_SCORING_WINDOW_DAYS", 7),
        domain_keywords=_csv_from_env("FINSHADOW_DOMAIN_KEYWORDS", DEFAULT_DOMAIN_KEYWORDS),
        log_level=os.environ.get("FINSHADOW_LOG_LEVEL", "INFO").upper(),
        loaded_from=loaded,
    )
    logger.debug("Settings loaded from %d FINSHADOW_* variables", len(loaded))
    return settings
