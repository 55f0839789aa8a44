"""Feedback sources — where the learning loop reads past decisions from."""

import threading
from typing import Dict, Iterable, List, Protocol

from matrix_kernel.models.learning import FeedbackRecord


class FeedbackSource(Protocol):
    """Read-only view of the surrounding system's decision history."""

    def load_feedback_records(self) -> List[FeedbackRecord]:
        ...


class InMemoryFeedbackSource:
    """
    Feedback records held in process, keyed by record id.
    Prototype stand-in for the session store of the surrounding system.
    """

    def __init__(self, records: Iterable[FeedbackRecord] = ()):
        self._records: Dict[str, FeedbackRecord] = {}
        self._lock = threading.Lock()
        self.add_many(records)

    def add(self, record: FeedbackRecord) -> None:
        with self._lock:
            self._records[record.record_id] = record

    def add_many(self, records: Iterable[FeedbackRecord]) -> int:
        count = 0
        for record in records:
            self.add(record)
            count += 1
        return count

    def get(self, record_id: str):
        return self._records.get(record_id)

    def load_feedback_records(self) -> List[FeedbackRecord]:
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)
