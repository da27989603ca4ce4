# FinShadow Core - Shared Infrastructure
#
# - SQLite connection helper (WAL, busy timeout, foreign keys)
# - Settings loaded from the environment / .env
# - Structured audit trail for pipeline runs

from .audit_log import AuditEvent, AuditLog, NullAuditLog
from .config import DEFAULT_DOMAIN_KEYWORDS, Settings, load_settings
from .db import connect

__all__ = [
    "AuditEvent",
    "AuditLog",
    "NullAuditLog",
    "DEFAULT_DOMAIN_KEYWORDS",
    "Settings",
    "load_settings",
    "connect",
]
