# backend/records.py
"""
Records view: student progress aggregation and the record-book workflow.

build_student_records() joins roster, experiments, submissions, viva attempts
and progress records into one row per (student, experiment) pair that has an
approved submission. RecordWorkflow flips the two manual flags; every write
publishes a change event so live RecordsTracker views re-aggregate.
"""

import threading
from datetime import datetime
from typing import Callable, ContextManager, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings
from events import (
    RECORD_COLLECTIONS, STUDENT_RECORDS, ChangeEvent, ChangeFeed,
)
from exceptions import (
    AuthorizationError, ExperimentNotFoundError, StudentNotFoundError,
    StoreError,
)
from logging_config import logger
from models import (
    Student, StudentRecord, Submission, SubmissionStatus, User, UserRole,
)
from repositories import (
    ExperimentRepository, StudentRecordRepository, StudentRepository,
    SubmissionRepository, UserRepository, VivaAttemptRepository,
)
from schemas import RecordsSummary, StudentRecordRow, SubmissionLinkView

# Older clients stored the link under different names; first non-empty wins.
SUBMISSION_LINK_FIELDS = ("submission_link", "submission_url", "link")

NO_LINK_MESSAGE = "No submission link available for this record."

STATUS_FILTERS = ("all", "observation_pending", "record_pending", "completed")


def resolve_submission_link(submission) -> Optional[str]:
    for field in SUBMISSION_LINK_FIELDS:
        value = getattr(submission, field, None)
        if value:
            return value
    return None


def submission_link_view(row: StudentRecordRow) -> SubmissionLinkView:
    if row.submission_link:
        return SubmissionLinkView(link=row.submission_link)
    return SubmissionLinkView(message=NO_LINK_MESSAGE)


def _row_sort_key(row: StudentRecordRow) -> Tuple:
    return (
        row.section or "",
        row.roll_no or "",
        row.student_name,
        row.student_id,
        row.experiment_title,
        row.experiment_id,
    )


def _approved_submission(submissions: Iterable[Submission]) -> Optional[Submission]:
    approved = [s for s in submissions if s.status == SubmissionStatus.APPROVED]
    if not approved:
        return None
    return max(approved, key=lambda s: s.approved_at or s.submitted_at or datetime.min)


def _find_profile(student: Student, by_id: Dict[str, User], by_email: Dict[str, User]) -> Optional[User]:
    # The roster id and the profile id can differ for imported students.
    return by_id.get(student.id) or by_email.get(student.email)


def build_student_records(db: Session, faculty_id: str,
                          student_id: Optional[str] = None,
                          experiment_id: Optional[str] = None) -> List[StudentRecordRow]:
    """Aggregate the records view for one faculty.

    A row is produced for a (student, experiment) pair if and only if the pair
    has an approved submission. Passing ``student_id``/``experiment_id``
    narrows the pass to matching pairs; the rows produced are the same ones a
    full pass would produce for them.
    """
    students = StudentRepository(db).list_by_faculty(faculty_id)
    experiments = ExperimentRepository(db).list_by_faculty(faculty_id)
    if student_id is not None:
        students = [s for s in students if s.id == student_id]
    if experiment_id is not None:
        experiments = [e for e in experiments if e.id == experiment_id]
    if not students or not experiments:
        return []

    student_ids = [s.id for s in students]
    profiles = UserRepository(db).list_profiles(student_ids, [s.email for s in students])
    profiles_by_id = {p.id: p for p in profiles}
    profiles_by_email = {p.email: p for p in profiles}

    submissions: Dict[Tuple[str, str], List[Submission]] = {}
    for submission in SubmissionRepository(db).list_for_students(student_ids):
        submissions.setdefault((submission.student_id, submission.experiment_id), []).append(submission)

    attempts = {
        (a.student_id, a.experiment_id): a
        for a in VivaAttemptRepository(db).list_for_students(student_ids)
    }
    records: Dict[Tuple[str, str], StudentRecord] = {
        (r.student_id, r.experiment_id): r
        for r in StudentRecordRepository(db).list_by_faculty(faculty_id)
    }

    rows: List[StudentRecordRow] = []
    for student in students:
        profile = _find_profile(student, profiles_by_id, profiles_by_email)
        for experiment in experiments:
            key = (student.id, experiment.id)
            submission = _approved_submission(submissions.get(key, ()))
            if submission is None:
                continue

            attempt = attempts.get(key)
            record = records.get(key)
            rows.append(StudentRecordRow(
                id=record.id if record else f"{student.id}_{experiment.id}",
                student_id=student.id,
                student_name=(profile.name if profile and profile.name else student.name),
                roll_no=(profile.roll_no if profile and profile.roll_no else student.roll_no),
                email=(profile.email if profile and profile.email else student.email),
                section=student.section,
                experiment_id=experiment.id,
                experiment_title=experiment.title,
                submission_id=submission.id,
                submission_status=submission.status,
                submission_link=resolve_submission_link(submission),
                submitted_date=submission.submitted_at,
                approved_date=submission.approved_at,
                observation_corrected=bool(record and record.observation_corrected),
                observation_corrected_date=record.observation_corrected_date if record else None,
                observation_corrected_by=record.observation_corrected_by if record else None,
                record_submitted=bool(record and record.record_submitted),
                record_submitted_date=record.record_submitted_date if record else None,
                record_submitted_by=record.record_submitted_by if record else None,
                viva_completed=attempt is not None,
                viva_score=attempt.score if attempt else None,
                viva_date=attempt.completed_at if attempt else None,
            ))

    rows.sort(key=_row_sort_key)
    return rows


# ==================== FILTERING ====================

def filter_records(rows: Iterable[StudentRecordRow],
                   search: Optional[str] = None,
                   experiment_id: Optional[str] = None,
                   section: Optional[str] = None,
                   status: str = "all") -> List[StudentRecordRow]:
    if status not in STATUS_FILTERS:
        raise ValueError(f"Unknown status filter: {status}")

    needle = (search or "").strip().lower()
    result = []
    for row in rows:
        if experiment_id and row.experiment_id != experiment_id:
            continue
        if section and row.section != section:
            continue
        if needle and not any(
            needle in (value or "").lower()
            for value in (row.student_name, row.roll_no, row.email)
        ):
            continue
        if status == "observation_pending" and row.observation_corrected:
            continue
        if status == "record_pending" and (not row.observation_corrected or row.record_submitted):
            continue
        if status == "completed" and not row.record_submitted:
            continue
        result.append(row)
    return result


def summarize_records(rows: Iterable[StudentRecordRow]) -> RecordsSummary:
    rows = list(rows)
    return RecordsSummary(
        total=len(rows),
        observation_corrected=sum(1 for r in rows if r.observation_corrected),
        record_submitted=sum(1 for r in rows if r.record_submitted),
        viva_completed=sum(1 for r in rows if r.viva_completed),
    )


# ==================== WORKFLOW ====================

class RecordWorkflow:
    """Manual record-book transitions performed by a faculty member."""

    def __init__(self, db: Session, feed: ChangeFeed, settings: Settings):
        self.db = db
        self.feed = feed
        self.records = StudentRecordRepository(
            db,
            max_attempts=settings.UPSERT_MAX_ATTEMPTS,
            retry_delay=settings.UPSERT_RETRY_DELAY,
        )

    def _check_pair(self, actor: User, student_id: str, experiment_id: str) -> None:
        if actor.role != UserRole.FACULTY:
            raise AuthorizationError("Only faculty can update records")
        student = StudentRepository(self.db).get(student_id)
        if student is None or student.faculty_id != actor.id:
            raise StudentNotFoundError(student_id)
        experiment = ExperimentRepository(self.db).get(experiment_id)
        if experiment is None or experiment.faculty_id != actor.id:
            raise ExperimentNotFoundError(experiment_id)

    def _apply(self, actor: User, student_id: str, experiment_id: str,
               mutate: Callable[[StudentRecord], None], action: str) -> StudentRecord:
        self._check_pair(actor, student_id, experiment_id)
        try:
            record = self.records.upsert(student_id, experiment_id, actor.id, mutate)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.log_error_with_context(e, context=action, student_id=student_id,
                                          experiment_id=experiment_id)
            raise StoreError("Failed to update record. Please try again.", operation=action)

        logger.info(f"{action}: {student_id}/{experiment_id} by {actor.id}")
        self.feed.publish(ChangeEvent(STUDENT_RECORDS, actor.id, student_id, experiment_id))
        return record

    def mark_observation_corrected(self, student_id: str, experiment_id: str, actor: User) -> StudentRecord:
        def mutate(record: StudentRecord) -> None:
            if not record.observation_corrected:
                record.observation_corrected = True
                record.observation_corrected_date = datetime.utcnow()
                record.observation_corrected_by = actor.id

        return self._apply(actor, student_id, experiment_id, mutate, "observation_corrected")

    def mark_record_submitted(self, student_id: str, experiment_id: str, actor: User) -> StudentRecord:
        def mutate(record: StudentRecord) -> None:
            now = datetime.utcnow()
            if not record.record_submitted:
                record.record_submitted = True
                record.record_submitted_date = now
                record.record_submitted_by = actor.id
            # A submitted record implies a corrected observation; keep the
            # first correction time if there is one.
            record.observation_corrected = True
            if record.observation_corrected_date is None:
                record.observation_corrected_date = now
                record.observation_corrected_by = actor.id

        return self._apply(actor, student_id, experiment_id, mutate, "record_submitted")


# ==================== LIVE VIEW ====================

SessionFactory = Callable[[], ContextManager[Session]]


class RecordsTracker:
    """Keeps one faculty's aggregated rows current from change events."""

    def __init__(self, faculty_id: str, session_factory: SessionFactory,
                 feed: ChangeFeed, incremental: bool = False):
        self.faculty_id = faculty_id
        self.session_factory = session_factory
        self.feed = feed
        self.incremental = incremental
        self._rows: List[StudentRecordRow] = []
        self._lock = threading.Lock()
        self._generation = 0
        self._full_generation = 0
        self._pair_generations: Dict[Tuple[str, str], int] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def rows(self) -> List[StudentRecordRow]:
        with self._lock:
            return list(self._rows)

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None

    def open(self) -> "RecordsTracker":
        if self._unsubscribe is None:
            self._unsubscribe = self.feed.subscribe(self.faculty_id, self._on_change, RECORD_COLLECTIONS)
            self.refresh()
        return self

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _next_generation(self, pair: Optional[Tuple[str, str]] = None) -> int:
        with self._lock:
            self._generation += 1
            if pair is None:
                self._full_generation = self._generation
            else:
                self._pair_generations[pair] = self._generation
            return self._generation

    def refresh(self) -> List[StudentRecordRow]:
        generation = self._next_generation()
        with self.session_factory() as db:
            rows = build_student_records(db, self.faculty_id)
        with self._lock:
            # A newer full pass started while this one was reading; drop ours.
            if generation == self._full_generation:
                newer = {p for p, g in self._pair_generations.items() if g > generation}
                if newer:
                    rows = [r for r in rows if (r.student_id, r.experiment_id) not in newer]
                    rows.extend(r for r in self._rows if (r.student_id, r.experiment_id) in newer)
                    rows.sort(key=_row_sort_key)
                self._rows = rows
            return list(self._rows)

    def refresh_pair(self, student_id: str, experiment_id: str) -> List[StudentRecordRow]:
        pair = (student_id, experiment_id)
        generation = self._next_generation(pair)
        with self.session_factory() as db:
            fresh = build_student_records(db, self.faculty_id, student_id, experiment_id)
        with self._lock:
            if generation == self._pair_generations.get(pair) and generation > self._full_generation:
                rows = [r for r in self._rows if (r.student_id, r.experiment_id) != pair]
                rows.extend(fresh)
                rows.sort(key=_row_sort_key)
                self._rows = rows
            return list(self._rows)

    def _on_change(self, event: ChangeEvent) -> None:
        if self.incremental and event.student_id and event.experiment_id:
            self.refresh_pair(event.student_id, event.experiment_id)
        else:
            self.refresh()


class TrackerRegistry:
    """One open RecordsTracker per faculty for the lifetime of the app."""

    def __init__(self, session_factory: SessionFactory, feed: ChangeFeed, incremental: bool = False):
        self.session_factory = session_factory
        self.feed = feed
        self.incremental = incremental
        self._trackers: Dict[str, RecordsTracker] = {}
        self._lock = threading.Lock()

    def get(self, faculty_id: str) -> RecordsTracker:
        with self._lock:
            tracker = self._trackers.get(faculty_id)
            if tracker is None:
                tracker = RecordsTracker(faculty_id, self.session_factory, self.feed, self.incremental)
                self._trackers[faculty_id] = tracker
        return tracker.open()

    def close(self) -> None:
        with self._lock:
            trackers = list(self._trackers.values())
            self._trackers.clear()
        for tracker in trackers:
            tracker.close()
