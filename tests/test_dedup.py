"""
Tests for the deduplicator.

Covers: duplicate lookup, sightings advancing last_seen, and the
check-then-insert race resolved by the unique constraint.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from finshadow.intel.dedup import Deduplicator
from finshadow.intel.models import Indicator, Severity, ThreatRecord, ThreatType, from_iso

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _record(content_hash="a" * 64) -> ThreatRecord:
    return ThreatRecord(
        source="Feed A",
        title="Card skimmer",
        type=ThreatType.DOMAIN,
        severity=Severity.HIGH,
        indicators=[Indicator("domain", "skim.example")],
        content_hash=content_hash,
        first_seen=NOW,
        last_seen=NOW,
        discovered_at=NOW,
    )


def _last_seen(store, content_hash="a" * 64):
    return from_iso(store.get_by_key("threat_intel", "content_hash", content_hash)["last_seen"])


class TestDeduplicator:
    def test_first_sighting_inserts(self, store):
        dedup = Deduplicator(store)
        rec = _record()
        assert dedup.is_duplicate(rec.content_hash) is False
        assert dedup.insert_or_touch(rec, NOW) is True
        assert rec.record_id is not None
        assert dedup.is_duplicate(rec.content_hash) is True

    def test_repeat_sighting_updates_last_seen_only(self, store):
        dedup = Deduplicator(store)
        dedup.insert_or_touch(_record(), NOW)
        later = NOW + timedelta(hours=3)
        assert dedup.insert_or_touch(_record(), later) is False
        assert store.count_by_predicate("threat_intel") == 1
        assert _last_seen(store) == later

    def test_older_sighting_does_not_regress(self, store):
        dedup = Deduplicator(store)
        dedup.insert_or_touch(_record(), NOW)
        dedup.record_sighting("a" * 64, NOW - timedelta(days=2))
        assert _last_seen(store) == NOW

    def test_lost_race_is_treated_as_duplicate(self, store):
        dedup = Deduplicator(store)
        dedup.insert_or_touch(_record(), NOW)
        later = NOW + timedelta(minutes=5)
        # Simulate the check passing before a concurrent insert landed
        with patch.object(Deduplicator, "is_duplicate", return_value=False):
            assert dedup.insert_or_touch(_record(), later) is False
        assert store.count_by_predicate("threat_intel") == 1
        assert _last_seen(store) == later

    def test_insert_new_on_existing_hash_is_sighting(self, store):
        dedup = Deduplicator(store)
        assert dedup.insert_new(_record(), NOW) is True
        later = NOW + timedelta(hours=1)
        assert dedup.insert_new(_record(), later) is False
        assert store.count_by_predicate("threat_intel") == 1
        assert _last_seen(store) == later

    def test_concurrent_ingestions_same_hash(self, store):
        dedup = Deduplicator(store)
        barrier = threading.Barrier(6)
        results, errors = [], []

        def worker():
            barrier.wait()
            try:
                results.append(dedup.insert_or_touch(_record(), NOW))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert results.count(True) == 1
        assert store.count_by_predicate("threat_intel") == 1
