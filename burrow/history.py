"""
In-memory record of recent backup, restore and cleanup runs.
"""

import threading
from collections import deque
from datetime import datetime
from typing import List, Optional

from burrow.models import RunRecord


DEFAULT_MAX_RECORDS = 200


class RunHistory:
    """
    Bounded, thread-safe list of RunRecords, oldest dropped first.
    """

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS):
        self._records = deque(maxlen=max_records)
        self._lock = threading.Lock()
        self._next_id = 1

    def start(self, kind: str, service: Optional[str] = None) -> RunRecord:
        """Create and store a record in the running state."""
        with self._lock:
            record = RunRecord(id=self._next_id, kind=kind, service=service)
            self._next_id += 1
            self._records.append(record)
        return record

    def finish(
        self,
        record: RunRecord,
        status: str,
        artifact: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> RunRecord:
        """
        Mark a record as finished.

        Args:
            record: Record returned by start()
            status: 'success', 'failed' or 'cancelled'
            artifact: Artifact produced or restored, if any
            error_message: Failure description, if any
        """
        with self._lock:
            record.status = status
            record.completed_at = datetime.utcnow()
            if artifact is not None:
                record.artifact = artifact
            record.error_message = error_message
        return record

    def recent(self, limit: Optional[int] = None, service: Optional[str] = None) -> List[RunRecord]:
        """Return records newest first, optionally filtered by service."""
        with self._lock:
            records = [r for r in reversed(self._records) if service is None or r.service == service]
        if limit is not None:
            records = records[:limit]
        return records

    def __len__(self):
        return len(self._records)
