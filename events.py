# backend/events.py
"""
In-process change feed.

Services publish a ChangeEvent after every committed write that can affect
the records view; subscribers (RecordsTracker instances) are scoped to one
faculty and a set of collections.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from logging_config import logger

SUBMISSIONS = "submissions"
VIVA_ATTEMPTS = "viva_attempts"
STUDENT_RECORDS = "student_records"
# Roster and experiment edits change joined fields or cascade-delete submissions
STUDENTS = "students"
EXPERIMENTS = "experiments"

RECORD_COLLECTIONS = frozenset({SUBMISSIONS, VIVA_ATTEMPTS, STUDENT_RECORDS, STUDENTS, EXPERIMENTS})


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    faculty_id: str
    student_id: Optional[str] = None
    experiment_id: Optional[str] = None


Callback = Callable[[ChangeEvent], None]


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._next_token = 0
        self._subscribers: Dict[int, Tuple[str, FrozenSet[str], Callback]] = {}

    def subscribe(self, faculty_id: str, callback: Callback,
                  collections: Iterable[str] = RECORD_COLLECTIONS) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (faculty_id, frozenset(collections), callback)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets: List[Callback] = [
                callback
                for faculty_id, collections, callback in self._subscribers.values()
                if faculty_id == event.faculty_id and event.collection in collections
            ]

        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                # One broken subscriber must not starve the others
                logger.log_error_with_context(e, context=f"change feed ({event.collection})")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
