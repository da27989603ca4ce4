# FinShadow Intel - Payload Normalizer
#
# Maps source-specific payloads onto the canonical ThreatRecord.
#
# Each FormatTag is bound to two functions:
#   - an item extractor that splits a raw payload into items
#   - a normalizer that maps one item to canonical fields
#
# The content hash is computed over a canonical serialization of
# (title, description, indicators), so re-ordered indicators or
# surrounding whitespace never produce a new identity.

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.config import DEFAULT_DOMAIN_KEYWORDS
from .models import FormatTag, Indicator, Severity, ThreatRecord, ThreatType
from .sources import FeedSource

logger = logging.getLogger(__name__)

# Unmapped or missing source severities resolve here, for every format.
DEFAULT_SEVERITY = Severity.MEDIUM

# Indicator type alias -> ThreatType.  Lookups are case-insensitive.
_INDICATOR_TYPE_MAP: Dict[str, ThreatType] = {
    "ipv4": ThreatType.IP,
    "ipv6": ThreatType.IP,
    "ip": ThreatType.IP,
    "ip:port": ThreatType.IP,
    "domain": ThreatType.DOMAIN,
    "hostname": ThreatType.DOMAIN,
    "fqdn": ThreatType.DOMAIN,
    "filehash-md5": ThreatType.HASH,
    "filehash-sha1": ThreatType.HASH,
    "filehash-sha256": ThreatType.HASH,
    "md5_hash": ThreatType.HASH,
    "sha1_hash": ThreatType.HASH,
    "sha256_hash": ThreatType.HASH,
    "hash": ThreatType.HASH,
    "md5": ThreatType.HASH,
    "sha256": ThreatType.HASH,
    "url": ThreatType.MALICIOUS_URL,
    "uri": ThreatType.MALICIOUS_URL,
}

_GENERIC_SEVERITY_MAP: Dict[str, Severity] = {s.value: s for s in Severity}

_THREATFOX_SEVERITY_MAP: Dict[str, Severity] = {
    "botnet_cc": Severity.CRITICAL,
    "payload_delivery": Severity.HIGH,
    "payload": Severity.HIGH,
    "cc_skimming": Severity.HIGH,
}

_URLHAUS_SEVERITY_MAP: Dict[str, Severity] = {
    "malware_download": Severity.HIGH,
    "phishing": Severity.HIGH,
    "malware_distribution": Severity.CRITICAL,
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def compute_content_hash(
    title: str,
    description: str,
    indicators: Iterable[Indicator],
) -> str:
    """SHA-256 over a canonical JSON serialization of the identity fields."""
    canonical = {
        "title": (title or "").strip(),
        "description": (description or "").strip(),
        "indicators": sorted([i.type.lower(), i.value] for i in indicators),
    }
    blob = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def infer_threat_type(indicators: Sequence[Indicator]) -> ThreatType:
    """Type of the first indicator; malware when there is none or it is unmapped."""
    if not indicators:
        return ThreatType.MALWARE
    return _INDICATOR_TYPE_MAP.get(
        (indicators[0].type or "").lower(), ThreatType.MALWARE
    )


def map_severity(value: Any, table: Optional[Dict[str, Severity]] = None) -> Severity:
    if value is None:
        return DEFAULT_SEVERITY
    key = str(value).strip().lower()
    return (table or _GENERIC_SEVERITY_MAP).get(key, DEFAULT_SEVERITY)


def filter_tags(
    tags: Iterable[str],
    keywords: Iterable[str] = DEFAULT_DOMAIN_KEYWORDS,
) -> List[str]:
    """Keep domain-relevant tags; fall back to all tags when none match."""
    cleaned = sorted({str(t).strip() for t in tags if str(t).strip()})
    kws = [k.lower() for k in keywords]
    relevant = [t for t in cleaned if any(k in t.lower() for k in kws)]
    return relevant or cleaned


def parse_timestamp(value: Any, default: datetime) -> datetime:
    """Parse ISO 8601 or ``YYYY-MM-DD HH:MM:SS`` (UTC); fall back to ``default``."""
    if not value:
        return default
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = datetime.strptime(text[:19], "%Y-%m-%d %H:%M:%S")
        except ValueError:
            logger.debug("Unparseable timestamp %r, using default", text)
            return default
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError:
        logger.debug("Timestamp %r out of range in UTC, using default", text)
        return default


def _split_tags(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        return [t.strip() for t in raw.split(",") if t.strip()]
    return [str(t) for t in raw if t]


def _strip_port(value: str) -> str:
    if value.startswith("["):
        end = value.find("]")
        return value[1:end] if end != -1 else value
    if value.count(":") == 1:
        return value.rsplit(":", 1)[0]
    return value


# ---------------------------------------------------------------------------
# Item extractors (payload -> items)
# ---------------------------------------------------------------------------


def _flatten_export(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """abuse.ch exports are ``{id: [entry, ...]}``; carry the id into each entry."""
    items: List[Dict[str, Any]] = []
    for key, entries in payload.items():
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict):
                items.append({"id": key, **entry})
    return items


def _item_list(payload: Dict[str, Any], key: str) -> List[Any]:
    items = payload.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise NormalizationError(
            f"'{key}' must be a list, got {type(items).__name__}"
        )
    return items


def _otx_items(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        return _item_list(payload, "results")
    if isinstance(payload, list):
        return payload
    raise NormalizationError("OTX payload must be an object or list")


def _threatfox_items(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        if "query_status" in payload:
            # "no_result" responses carry a string in data
            data = payload.get("data")
            return data if isinstance(data, list) else []
        return _flatten_export(payload)
    if isinstance(payload, list):
        return payload
    raise NormalizationError("ThreatFox payload must be an object or list")


def _urlhaus_items(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        if "urls" in payload or "query_status" in payload:
            return _item_list(payload, "urls")
        return _flatten_export(payload)
    if isinstance(payload, list):
        return payload
    raise NormalizationError("URLhaus payload must be an object or list")


def _canonical_items(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        return _item_list(payload, "items")
    if isinstance(payload, list):
        return payload
    raise NormalizationError("Canonical payload must be a list or {'items': [...]}")


# ---------------------------------------------------------------------------
# Item normalizers (item -> canonical fields)
# ---------------------------------------------------------------------------


def _normalize_otx(item: Dict[str, Any]) -> Dict[str, Any]:
    indicators = []
    for ind in item.get("indicators") or []:
        value = str(ind.get("indicator") or "").strip()
        if value:
            indicators.append(Indicator(str(ind.get("type") or ""), value))
    pulse_id = item.get("id")
    return {
        "title": item.get("name"),
        "description": item.get("description") or "",
        "severity": map_severity(item.get("severity")),
        "indicators": indicators,
        "tags": _split_tags(item.get("tags")),
        "source_id": str(pulse_id) if pulse_id else None,
        "source_url": f"https://otx.alienvault.com/pulse/{pulse_id}" if pulse_id else None,
        "first_seen": item.get("created"),
        "last_seen": item.get("modified"),
    }


def _normalize_threatfox(item: Dict[str, Any]) -> Dict[str, Any]:
    ioc_type = str(item.get("ioc_type") or "")
    value = str(item.get("ioc") or item.get("ioc_value") or "").strip()
    indicators = []
    if value:
        if ioc_type == "ip:port":
            value = _strip_port(value)
        indicators.append(Indicator(ioc_type, value))

    malware = item.get("malware_printable") or item.get("malware") or ""
    threat_type = str(item.get("threat_type") or "")
    title = f"{malware} {ioc_type} {value}".strip() if malware else value
    ref = item.get("id")
    return {
        "title": title,
        "description": item.get("threat_type_desc") or threat_type,
        "severity": map_severity(threat_type, _THREATFOX_SEVERITY_MAP),
        "indicators": indicators,
        "tags": _split_tags(item.get("tags")),
        "source_id": str(ref) if ref else None,
        "source_url": f"https://threatfox.abuse.ch/ioc/{ref}/" if ref else None,
        "first_seen": item.get("first_seen_utc") or item.get("first_seen"),
        "last_seen": item.get("last_seen_utc") or item.get("last_seen"),
    }


def _normalize_urlhaus(item: Dict[str, Any]) -> Dict[str, Any]:
    url = str(item.get("url") or "").strip()
    threat = str(item.get("threat") or "")
    ref = item.get("id")
    return {
        "title": f"URLhaus {threat or 'malicious URL'}: {url}" if url else None,
        "description": f"URL status: {item.get('url_status') or 'unknown'}",
        "severity": map_severity(threat, _URLHAUS_SEVERITY_MAP),
        "indicators": [Indicator("url", url)] if url else [],
        "tags": _split_tags(item.get("tags")),
        "source_id": str(ref) if ref else None,
        "source_url": item.get("urlhaus_link")
        or (f"https://urlhaus.abuse.ch/url/{ref}/" if ref else None),
        "first_seen": item.get("date_added") or item.get("dateadded"),
        "last_seen": item.get("last_online"),
    }


def _normalize_canonical(item: Dict[str, Any]) -> Dict[str, Any]:
    indicators = [
        Indicator(str(i.get("type") or ""), str(i.get("value") or "").strip())
        for i in item.get("indicators") or []
        if str(i.get("value") or "").strip()
    ]
    return {
        "title": item.get("title"),
        "description": item.get("description") or "",
        "severity": map_severity(item.get("severity")),
        "indicators": indicators,
        "tags": _split_tags(item.get("tags")),
        "source_id": item.get("source_id"),
        "source_url": item.get("source_url"),
        "first_seen": item.get("first_seen"),
        "last_seen": item.get("last_seen"),
        "discovered_at": item.get("discovered_at"),
    }


_ITEM_EXTRACTORS: Dict[FormatTag, Callable[[Any], List[Any]]] = {
    FormatTag.OTX_PULSE: _otx_items,
    FormatTag.THREATFOX: _threatfox_items,
    FormatTag.URLHAUS: _urlhaus_items,
    FormatTag.CANONICAL_JSON: _canonical_items,
}

_NORMALIZERS: Dict[FormatTag, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    FormatTag.OTX_PULSE: _normalize_otx,
    FormatTag.THREATFOX: _normalize_threatfox,
    FormatTag.URLHAUS: _normalize_urlhaus,
    FormatTag.CANONICAL_JSON: _normalize_canonical,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_item(
    item: Any,
    format_tag: FormatTag,
    source_name: str,
    now: datetime,
    keywords: Iterable[str] = DEFAULT_DOMAIN_KEYWORDS,
) -> ThreatRecord:
    """Map one payload item to a ThreatRecord with its content hash set.

    Raises:
        NormalizationError: If the item is not an object or has no title.
    """
    if not isinstance(item, dict):
        raise NormalizationError(f"Expected an object, got {type(item).__name__}")

    try:
        fields = _NORMALIZERS[format_tag](item)
    except (AttributeError, TypeError, ValueError) as exc:
        raise NormalizationError(f"Malformed item: {exc}") from exc
    title = str(fields.get("title") or "").strip()
    if not title:
        raise NormalizationError("Item has no title")

    description = str(fields.get("description") or "").strip()
    indicators: List[Indicator] = fields["indicators"]

    first_seen = parse_timestamp(fields.get("first_seen"), now)
    last_seen = max(parse_timestamp(fields.get("last_seen"), now), first_seen)

    return ThreatRecord(
        source=source_name,
        source_id=fields.get("source_id"),
        source_url=fields.get("source_url"),
        title=title,
        description=description,
        type=infer_threat_type(indicators),
        severity=fields["severity"],
        indicators=indicators,
        tags=filter_tags(fields.get("tags") or [], keywords),
        content_hash=compute_content_hash(title, description, indicators),
        first_seen=first_seen,
        last_seen=last_seen,
        discovered_at=parse_timestamp(fields.get("discovered_at"), now),
    )


def normalize_payload(
    payload: Any,
    source: FeedSource,
    now: datetime,
    keywords: Iterable[str] = DEFAULT_DOMAIN_KEYWORDS,
) -> Tuple[List[ThreatRecord], int]:
    """Normalize every item of a payload.  Returns ``(records, error_count)``.

    A bad item is logged and counted; it never aborts the rest of the
    batch.  A payload whose overall shape is wrong raises
    NormalizationError.
    """
    items = _ITEM_EXTRACTORS[source.format_tag](payload)
    records: List[ThreatRecord] = []
    errors = 0
    for item in items:
        try:
            records.append(
                normalize_item(item, source.format_tag, source.name, now, keywords)
            )
        except NormalizationError as exc:
            errors += 1
            logger.debug("%s: skipped item: %s", source.source_id, exc)
    if errors:
        logger.warning(
            "%s: %d of %d items failed normalization",
            source.source_id, errors, len(items),
        )
    return records, errors


class NormalizationError(Exception):
    """Raised when a payload item lacks a required field."""
