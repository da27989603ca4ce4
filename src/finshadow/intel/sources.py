# FinShadow Intel - Feed Source Registry
#
# Static list of upstream feed descriptors.  Every descriptor is
# validated when the registry is built: an unknown format tag is a
# configuration error raised at startup, never a fetch-time failure.

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .models import FormatTag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedSource:
    """One upstream threat-intel feed."""

    source_id: str
    name: str
    endpoint: str
    format_tag: FormatTag
    poll_interval_hours: float
    api_key_env: Optional[str] = None  # env var holding the API key
    api_key_header: Optional[str] = None  # header the key is sent in

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(hours=self.poll_interval_hours)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.source_id,
            "name": self.name,
            "endpoint": self.endpoint,
            "format_tag": self.format_tag.value,
            "poll_interval_hours": self.poll_interval_hours,
            "api_key_env": self.api_key_env,
            "api_key_header": self.api_key_header,
        }


DEFAULT_SOURCES: List[FeedSource] = [
    FeedSource(
        source_id="alienvault-otx",
        name="AlienVault OTX",
        endpoint="https://otx.alienvault.com/api/v1/pulses/subscribed",
        format_tag=FormatTag.OTX_PULSE,
        poll_interval_hours=6,
        api_key_env="OTX_API_KEY",
        api_key_header="X-OTX-API-KEY",
    ),
    FeedSource(
        source_id="abusech-threatfox",
        name="abuse.ch ThreatFox",
        endpoint="https://threatfox.abuse.ch/export/json/recent/",
        format_tag=FormatTag.THREATFOX,
        poll_interval_hours=1,
        api_key_env="ABUSECH_AUTH_KEY",
        api_key_header="Auth-Key",
    ),
    FeedSource(
        source_id="abusech-urlhaus",
        name="abuse.ch URLhaus",
        endpoint="https://urlhaus.abuse.ch/downloads/json_recent/",
        format_tag=FormatTag.URLHAUS,
        poll_interval_hours=1,
        api_key_env="ABUSECH_AUTH_KEY",
        api_key_header="Auth-Key",
    ),
]


def _parse_source(raw: Mapping[str, Any]) -> FeedSource:
    """Validate one descriptor dict and build a ``FeedSource``."""
    source_id = str(raw.get("id") or "").strip()
    if not source_id:
        raise SourceConfigError(f"Feed source is missing an id: {dict(raw)!r}")

    endpoint = str(raw.get("endpoint") or "").strip()
    if not endpoint.startswith(("http://", "https://")):
        raise SourceConfigError(
            f"Feed source {source_id!r} needs an http(s) endpoint, got {endpoint!r}"
        )

    tag = raw.get("format_tag")
    try:
        format_tag = FormatTag(tag)
    except ValueError:
        valid = ", ".join(t.value for t in FormatTag)
        raise SourceConfigError(
            f"Feed source {source_id!r} has unknown format_tag {tag!r} "
            f"(expected one of: {valid})"
        ) from None

    try:
        interval = float(raw.get("poll_interval_hours", 1))
    except (TypeError, ValueError):
        raise SourceConfigError(
            f"Feed source {source_id!r} has a non-numeric poll_interval_hours"
        ) from None
    if interval <= 0:
        raise SourceConfigError(
            f"Feed source {source_id!r} poll_interval_hours must be positive"
        )

    return FeedSource(
        source_id=source_id,
        name=str(raw.get("name") or source_id),
        endpoint=endpoint,
        format_tag=format_tag,
        poll_interval_hours=interval,
        api_key_env=raw.get("api_key_env"),
        api_key_header=raw.get("api_key_header"),
    )


class SourceRegistry:
    """Validated, ordered set of feed sources keyed by id.

    Usage::

        registry = SourceRegistry.from_dicts(json.load(fh))
        for source in registry.due(now, last_polled):
            ...
    """

    def __init__(self, sources: Iterable[FeedSource]):
        self._sources: Dict[str, FeedSource] = {}
        for source in sources:
            if source.source_id in self._sources:
                raise SourceConfigError(f"Duplicate feed source id: {source.source_id!r}")
            self._sources[source.source_id] = source

    @classmethod
    def from_dicts(cls, raw_sources: Iterable[Mapping[str, Any]]) -> "SourceRegistry":
        return cls(_parse_source(raw) for raw in raw_sources)

    @classmethod
    def default(cls) -> "SourceRegistry":
        return cls(DEFAULT_SOURCES)

    def __iter__(self) -> Iterator[FeedSource]:
        return iter(self._sources.values())

    def __len__(self) -> int:
        return len(self._sources)

    def get(self, source_id: str) -> Optional[FeedSource]:
        return self._sources.get(source_id)

    def due(
        self,
        now: datetime,
        last_polled: Mapping[str, datetime],
    ) -> List[FeedSource]:
        """Sources whose poll interval has elapsed since their last poll."""
        due: List[FeedSource] = []
        for source in self._sources.values():
            last = last_polled.get(source.source_id)
            if last is None or now - last >= source.poll_interval:
                due.append(source)
        return due


def load_sources(path: Optional[str] = None) -> SourceRegistry:
    """Load a registry from a JSON file, or the built-in defaults.

    The file holds a JSON list of descriptor objects with keys ``id``,
    ``name``, ``endpoint``, ``format_tag``, ``poll_interval_hours`` and
    optionally ``api_key_env`` / ``api_key_header``.

    Raises:
        SourceConfigError: On unreadable files or invalid descriptors.
    """
    if not path:
        return SourceRegistry.default()

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SourceConfigError(f"Cannot read feed sources from {path}: {exc}") from exc

    if not isinstance(raw, list):
        raise SourceConfigError(f"{path} must contain a JSON list of feed sources")

    registry = SourceRegistry.from_dicts(raw)
    logger.info("Loaded %d feed sources from %s", len(registry), path)
    return registry


class SourceConfigError(Exception):
    """Raised when a feed source descriptor is invalid."""
