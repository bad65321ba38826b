"""
Unit Tests for the change feed and the live records tracker
"""
import pytest

import records
from events import (
    STUDENT_RECORDS, SUBMISSIONS, VIVA_ATTEMPTS, ChangeEvent, ChangeFeed,
)
from lab_service import LabService
from models import StudentRecord, SubmissionStatus
from records import RecordsTracker, RecordWorkflow, TrackerRegistry, build_student_records
from schemas import ExperimentUpdate


class TestChangeFeed:

    def test_scoped_to_faculty_and_collection(self):
        feed = ChangeFeed()
        seen = []
        feed.subscribe("f1", seen.append, collections={SUBMISSIONS})

        feed.publish(ChangeEvent(SUBMISSIONS, "f1"))
        feed.publish(ChangeEvent(SUBMISSIONS, "f2"))
        feed.publish(ChangeEvent(VIVA_ATTEMPTS, "f1"))

        assert seen == [ChangeEvent(SUBMISSIONS, "f1")]

    def test_unsubscribe(self):
        feed = ChangeFeed()
        seen = []
        unsubscribe = feed.subscribe("f1", seen.append)
        unsubscribe()

        feed.publish(ChangeEvent(STUDENT_RECORDS, "f1"))

        assert seen == []
        assert feed.subscriber_count == 0

    def test_failing_subscriber_does_not_block_others(self):
        feed = ChangeFeed()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        feed.subscribe("f1", broken)
        feed.subscribe("f1", seen.append)

        feed.publish(ChangeEvent(STUDENT_RECORDS, "f1"))

        assert len(seen) == 1


class TestRecordsTracker:

    @pytest.fixture
    def setup(self, db_session, faculty, make_student, make_experiment, make_submission):
        student = make_student(faculty)
        experiment = make_experiment(faculty)
        submission = make_submission(student, experiment, SubmissionStatus.PENDING)
        return student, experiment, submission

    def test_open_aggregates_and_close_unsubscribes(self, database, feed, faculty, setup):
        tracker = RecordsTracker(faculty.id, database.session, feed).open()

        assert tracker.is_open
        assert tracker.rows == []
        assert feed.subscriber_count == 1

        tracker.close()
        assert not tracker.is_open
        assert feed.subscriber_count == 0

    def test_approval_event_refreshes_rows(self, database, db_session, feed, faculty, setup):
        student, experiment, submission = setup
        tracker = RecordsTracker(faculty.id, database.session, feed).open()

        LabService(db_session, feed).review_submission(faculty, submission.id, approve=True)

        assert [(r.student_id, r.experiment_id) for r in tracker.rows] == [(student.id, experiment.id)]

    def test_workflow_event_refreshes_rows(self, database, db_session, feed, settings,
                                           faculty, setup):
        student, experiment, submission = setup
        LabService(db_session, feed).review_submission(faculty, submission.id, approve=True)
        tracker = RecordsTracker(faculty.id, database.session, feed).open()

        RecordWorkflow(db_session, feed, settings).mark_record_submitted(student.id, experiment.id, faculty)

        row = tracker.rows[0]
        assert row.record_submitted is True
        assert row.observation_corrected is True

    def test_incremental_matches_full_recompute(self, database, db_session, feed, settings, faculty,
                                                make_student, make_experiment, make_submission):
        students = [make_student(faculty) for _ in range(2)]
        experiments = [make_experiment(faculty) for _ in range(2)]
        pending = [make_submission(s, e, SubmissionStatus.PENDING) for s in students for e in experiments]
        incremental = RecordsTracker(faculty.id, database.session, feed, incremental=True).open()
        full = RecordsTracker(faculty.id, database.session, feed, incremental=False).open()

        labs = LabService(db_session, feed)
        workflow = RecordWorkflow(db_session, feed, settings)
        labs.review_submission(faculty, pending[0].id, approve=True)
        labs.review_submission(faculty, pending[3].id, approve=True)
        workflow.mark_observation_corrected(students[0].id, experiments[0].id, faculty)
        labs.review_submission(faculty, pending[1].id, approve=True)

        assert incremental.rows == full.rows
        assert incremental.rows == build_student_records(db_session, faculty.id)
        assert len(incremental.rows) == 3

    @pytest.mark.parametrize("incremental", [False, True])
    def test_experiment_edits_refresh_rows(self, database, db_session, feed, faculty, setup, incremental):
        student, experiment, submission = setup
        labs = LabService(db_session, feed)
        labs.review_submission(faculty, submission.id, approve=True)
        tracker = RecordsTracker(faculty.id, database.session, feed, incremental=incremental).open()

        labs.update_experiment(faculty, experiment.id, ExperimentUpdate(title="Renamed lab"))
        assert [r.experiment_title for r in tracker.rows] == ["Renamed lab"]

        labs.delete_experiment(faculty, experiment.id)
        assert tracker.rows == []

    def test_stale_pass_does_not_overwrite_newer(self, database, feed, faculty, monkeypatch):
        tracker = RecordsTracker(faculty.id, database.session, feed)
        calls = []

        def fake_build(db, faculty_id, *args):
            calls.append(faculty_id)
            if len(calls) == 1:
                # a newer pass starts and finishes while this one is in flight
                tracker.refresh()
                return ["stale"]
            return ["fresh"]

        monkeypatch.setattr(records, "build_student_records", fake_build)

        assert tracker.refresh() == ["fresh"]
        assert tracker.rows == ["fresh"]

    def test_overlapping_pair_passes_both_apply(self, database, db_session, feed, faculty,
                                                make_student, make_experiment, make_submission,
                                                monkeypatch):
        experiment = make_experiment(faculty)
        first, second = make_student(faculty), make_student(faculty)
        for student in (first, second):
            make_submission(student, experiment)
        tracker = RecordsTracker(faculty.id, database.session, feed, incremental=True).open()

        # Written without publishing, so only the explicit passes below see them
        for student in (first, second):
            db_session.add(StudentRecord(
                student_id=student.id, experiment_id=experiment.id, faculty_id=faculty.id,
                observation_corrected=True, record_submitted=True,
            ))
        db_session.commit()

        real_build = records.build_student_records
        nested = []

        def build(db, faculty_id, student_id=None, experiment_id=None):
            if student_id == first.id and not nested:
                nested.append(1)
                tracker.refresh_pair(second.id, experiment.id)
            return real_build(db, faculty_id, student_id, experiment_id)

        monkeypatch.setattr(records, "build_student_records", build)
        tracker.refresh_pair(first.id, experiment.id)

        assert nested == [1]
        assert [r.record_submitted for r in tracker.rows] == [True, True]

    def test_full_pass_keeps_newer_pair_result(self, database, db_session, feed, faculty,
                                               make_student, make_experiment, make_submission,
                                               monkeypatch):
        experiment = make_experiment(faculty)
        student = make_student(faculty)
        make_submission(student, experiment)
        tracker = RecordsTracker(faculty.id, database.session, feed, incremental=True)

        real_build = records.build_student_records

        def build(db, faculty_id, student_id=None, experiment_id=None):
            if student_id is None:
                # read the old state, then let a pair pass land first
                rows = real_build(db, faculty_id)
                db_session.add(StudentRecord(
                    student_id=student.id, experiment_id=experiment.id, faculty_id=faculty.id,
                    observation_corrected=True,
                ))
                db_session.commit()
                tracker.refresh_pair(student.id, experiment.id)
                return rows
            return real_build(db, faculty_id, student_id, experiment_id)

        monkeypatch.setattr(records, "build_student_records", build)
        tracker.refresh()

        assert [r.observation_corrected for r in tracker.rows] == [True]


class TestTrackerRegistry:

    def test_one_tracker_per_faculty(self, database, feed, faculty, other_faculty):
        registry = TrackerRegistry(database.session, feed)

        first = registry.get(faculty.id)
        assert registry.get(faculty.id) is first
        assert registry.get(other_faculty.id) is not first
        assert feed.subscriber_count == 2

        registry.close()
        assert feed.subscriber_count == 0
