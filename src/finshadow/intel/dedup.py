# FinShadow Intel - Deduplicator
#
# Resolves ThreatRecord identity (content_hash) against the store.
# The application-level is_duplicate() check is a fast path; the UNIQUE
# index on content_hash is the authority.  An insert that loses a race
# to a concurrent duplicate is recorded as a sighting, not an error.

import logging
from datetime import datetime

from .models import ThreatRecord, to_iso
from .store import DuplicateConflict, IntelStore, Predicate

logger = logging.getLogger(__name__)


class Deduplicator:
    """Identity resolution for threat records."""

    def __init__(self, store: IntelStore):
        self.store = store

    def is_duplicate(self, content_hash: str) -> bool:
        return self.store.count_by_predicate(
            "threat_intel", [Predicate("content_hash", "=", content_hash)]
        ) > 0

    def record_sighting(self, content_hash: str, observed_at: datetime) -> None:
        """Advance ``last_seen`` to ``observed_at`` (never backwards)."""
        self.store.touch_last_seen(content_hash, to_iso(observed_at))

    def insert_or_touch(self, record: ThreatRecord, observed_at: datetime) -> bool:
        """Persist a new record, or record a repeat sighting.

        Returns True when the record was inserted, False when it already
        existed.  Raises PersistenceError only on store failure.
        """
        if self.is_duplicate(record.content_hash):
            self.record_sighting(record.content_hash, observed_at)
            return False
        return self.insert_new(record, observed_at)

    def insert_new(self, record: ThreatRecord, observed_at: datetime) -> bool:
        """Insert a record already checked as new.

        A concurrent insert of the same hash is recorded as a sighting
        and reported as False.
        """
        try:
            record.record_id = self.store.insert_returning_id(
                "threat_intel", record.to_row()
            )
        except DuplicateConflict:
            logger.debug("Concurrent insert won for %s", record.content_hash[:12])
            self.record_sighting(record.content_hash, observed_at)
            return False
        return True
