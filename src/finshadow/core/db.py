# FinShadow Core - SQLite Connection Helper
#
# All FinShadow storage opens its connection through connect().  Stages
# run on separate scheduler threads against one file, so WAL and a busy
# timeout are mandatory; foreign keys tie risk_scores and alerts back to
# threat_intel.

import sqlite3
from pathlib import Path
from typing import Optional, Union

BUSY_TIMEOUT_MS = 5000
MEMORY = ":memory:"


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
    busy_timeout_ms: Optional[int] = None,
) -> sqlite3.Connection:
    """Open a FinShadow database, creating its parent directory if needed.

    ``check_same_thread=False`` is for connections shared across worker
    threads behind the caller's own lock.
    """
    target = str(db_path)
    if target != MEMORY:
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    timeout = BUSY_TIMEOUT_MS if busy_timeout_ms is None else busy_timeout_ms
    conn = sqlite3.connect(target, check_same_thread=check_same_thread)
    for pragma in ("journal_mode=WAL", f"busy_timeout={int(timeout)}", "foreign_keys=ON"):
        conn.execute(f"PRAGMA {pragma}")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
