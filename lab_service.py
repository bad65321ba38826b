# backend/lab_service.py
"""
Lab Service Layer
Experiments, viva questions, submissions, viva attempts and the student's own
progress view.
"""

from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from events import EXPERIMENTS, SUBMISSIONS, VIVA_ATTEMPTS, ChangeEvent, ChangeFeed
from exceptions import (
    AuthorizationError, DuplicateEntityError, ExperimentNotFoundError,
    StudentNotFoundError, SubmissionNotFoundError, ValidationError,
    VivaQuestionNotFoundError,
)
from logging_config import logger
from models import (
    Experiment, Submission, SubmissionStatus, User, UserRole, VivaAttempt,
    VivaQuestion,
)
from repositories import (
    ExperimentRepository, StudentRecordRepository, StudentRepository,
    SubmissionRepository, VivaAttemptRepository, VivaQuestionRepository,
)
from schemas import (
    ExperimentCreate, ExperimentProgress, ExperimentUpdate, VivaQuestionCreate,
)


def calculate_score(questions: List[VivaQuestion], answers: Dict[str, int]) -> int:
    """Number of questions answered with the correct option"""
    return sum(1 for q in questions if answers.get(q.id) == q.correct_answer)


class LabService:
    def __init__(self, db: Session, feed: ChangeFeed):
        self.db = db
        self.feed = feed
        self.experiments = ExperimentRepository(db)
        self.questions = VivaQuestionRepository(db)
        self.submissions = SubmissionRepository(db)
        self.attempts = VivaAttemptRepository(db)
        self.students = StudentRepository(db)
        self.records = StudentRecordRepository(db)

    # ==================== EXPERIMENTS ====================

    def create_experiment(self, faculty: User, data: ExperimentCreate) -> Experiment:
        experiment = self.experiments.create(faculty.id, data)
        logger.info(f"Experiment '{experiment.title}' created by {faculty.id}")
        return experiment

    def list_experiments(self, faculty_id: str) -> List[Experiment]:
        return self.experiments.list_by_faculty(faculty_id)

    def get_owned_experiment(self, faculty: User, experiment_id: str) -> Experiment:
        experiment = self.experiments.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        if experiment.faculty_id != faculty.id:
            raise AuthorizationError("Experiment belongs to another faculty")
        return experiment

    def update_experiment(self, faculty: User, experiment_id: str, data: ExperimentUpdate) -> Experiment:
        experiment = self.get_owned_experiment(faculty, experiment_id)
        experiment = self.experiments.update(experiment, data)
        self.feed.publish(ChangeEvent(EXPERIMENTS, faculty.id))
        return experiment

    def delete_experiment(self, faculty: User, experiment_id: str) -> bool:
        self.get_owned_experiment(faculty, experiment_id)
        deleted = self.experiments.delete(experiment_id)
        # Submissions and progress records for it went with it
        self.feed.publish(ChangeEvent(EXPERIMENTS, faculty.id))
        return deleted

    # ==================== VIVA QUESTIONS ====================

    def add_viva_question(self, faculty: User, experiment_id: str, data: VivaQuestionCreate) -> VivaQuestion:
        self.get_owned_experiment(faculty, experiment_id)
        return self.questions.create(experiment_id, faculty.id, data)

    def list_viva_questions(self, user: User, experiment_id: str) -> List[VivaQuestion]:
        experiment = self.experiments.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        owner = user.id if user.role == UserRole.FACULTY else user.faculty_id
        if experiment.faculty_id != owner:
            raise AuthorizationError("Experiment belongs to another faculty")
        return self.questions.list_by_experiment(experiment_id)

    def _owned_question(self, faculty: User, question_id: str) -> VivaQuestion:
        question = self.questions.get(question_id)
        if question is None:
            raise VivaQuestionNotFoundError(question_id)
        if question.faculty_id != faculty.id:
            raise AuthorizationError("Question belongs to another faculty")
        return question

    def update_viva_question(self, faculty: User, question_id: str, data: VivaQuestionCreate) -> VivaQuestion:
        question = self._owned_question(faculty, question_id)
        return self.questions.update(question, data)

    def delete_viva_question(self, faculty: User, question_id: str) -> bool:
        self._owned_question(faculty, question_id)
        return self.questions.delete(question_id)

    # ==================== SUBMISSIONS ====================

    def _student_experiment(self, student_user: User, experiment_id: str):
        student = self.students.get(student_user.id)
        if student is None:
            raise StudentNotFoundError(student_user.id)
        experiment = self.experiments.get(experiment_id)
        if experiment is None or experiment.faculty_id != student.faculty_id:
            raise ExperimentNotFoundError(experiment_id)
        return student, experiment

    def submit_work(self, student_user: User, experiment_id: str, link: str) -> Submission:
        student, experiment = self._student_experiment(student_user, experiment_id)
        submission = self.submissions.create(student.id, experiment.id, student.faculty_id, link)
        self.feed.publish(ChangeEvent(SUBMISSIONS, student.faculty_id, student.id, experiment.id))
        return submission

    def list_submissions(self, user: User) -> List[Submission]:
        if user.role == UserRole.FACULTY:
            return self.submissions.list_by_faculty(user.id)
        return self.submissions.list_by_student(user.id)

    def review_submission(self, faculty: User, submission_id: str, approve: bool,
                          feedback: Optional[str] = None) -> Submission:
        submission = self.submissions.get(submission_id)
        if submission is None:
            raise SubmissionNotFoundError(submission_id)
        if submission.faculty_id != faculty.id:
            raise AuthorizationError("Submission belongs to another faculty")

        status = SubmissionStatus.APPROVED if approve else SubmissionStatus.REJECTED
        submission = self.submissions.set_status(submission, status, faculty.id, feedback)
        logger.info(f"Submission {submission.id} {status.value} by {faculty.id}")
        self.feed.publish(ChangeEvent(
            SUBMISSIONS, faculty.id, submission.student_id, submission.experiment_id
        ))
        return submission

    # ==================== VIVA ATTEMPTS ====================

    def take_viva(self, student_user: User, experiment_id: str, answers: Dict[str, int]) -> VivaAttempt:
        student, experiment = self._student_experiment(student_user, experiment_id)
        if self.attempts.get_for_pair(student.id, experiment.id) is not None:
            raise DuplicateEntityError("Viva attempt", "experiment", experiment.id)

        questions = self.questions.list_by_experiment(experiment.id)
        if not questions:
            raise ValidationError("This experiment has no viva questions", field="experiment_id")

        score = calculate_score(questions, answers)
        attempt = self.attempts.create(
            student.id, experiment.id, student.faculty_id, score, len(questions), answers
        )
        logger.info(f"Viva for {experiment.id} by {student.id}: {score}/{len(questions)}")
        self.feed.publish(ChangeEvent(VIVA_ATTEMPTS, student.faculty_id, student.id, experiment.id))
        return attempt

    # ==================== PROGRESS ====================

    def student_progress(self, student_user: User) -> List[ExperimentProgress]:
        student = self.students.get(student_user.id)
        if student is None:
            raise StudentNotFoundError(student_user.id)

        submissions: Dict[str, Submission] = {}
        # newest first, so keep the first seen per experiment
        for submission in self.submissions.list_by_student(student.id):
            submissions.setdefault(submission.experiment_id, submission)
        attempts = {a.experiment_id: a for a in self.attempts.list_for_students([student.id])}
        records = {r.experiment_id: r for r in self.records.list_for_student(student.id)}

        progress = []
        for experiment in self.experiments.list_by_faculty(student.faculty_id):
            submission = submissions.get(experiment.id)
            attempt = attempts.get(experiment.id)
            record = records.get(experiment.id)
            progress.append(ExperimentProgress(
                experiment_id=experiment.id,
                experiment_title=experiment.title,
                submission_status=submission.status if submission else None,
                viva_completed=attempt is not None,
                viva_score=attempt.score if attempt else None,
                observation_corrected=bool(record and record.observation_corrected),
                record_submitted=bool(record and record.record_submitted),
            ))
        return progress
