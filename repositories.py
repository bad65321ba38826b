# backend/repositories.py
"""
Persistence adapters.

Thin query/mutation wrappers, one per table, each bound to a Session.
Only equality filters are used. No business rules live here apart from the
progress-record upsert, which has to be atomic.
"""

import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from exceptions import StoreError
from logging_config import logger
from models import (
    Experiment, Student, StudentRecord, Submission, SubmissionStatus, User,
    UserRole, VivaAttempt, VivaQuestion,
)
from schemas import (
    ExperimentCreate, ExperimentUpdate, StudentCreate, StudentUpdate,
    UserCreate, VivaQuestionCreate,
)


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, data: UserCreate) -> User:
        user = User(**data.model_dump())
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        logger.log_db_write("insert", "users", user.id)
        return user

    def create_with_id(self, user_id: str, data: UserCreate) -> User:
        """Stage a profile sharing its id with a roster row; caller commits."""
        user = User(id=user_id, **data.model_dump())
        self.db.add(user)
        return user

    def get(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email).first()

    def find_students_by_roll_no(self, roll_no: str, limit: int = 2) -> List[User]:
        return (
            self.db.query(User)
            .filter(User.roll_no == roll_no, User.role == UserRole.STUDENT)
            .limit(limit)
            .all()
        )

    def email_taken(self, email: str, exclude_id: Optional[str] = None) -> bool:
        query = self.db.query(User.id).filter(User.email == email)
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        return query.first() is not None

    def set_password(self, user_id: str, password_hash: str) -> bool:
        updated = (
            self.db.query(User)
            .filter(User.id == user_id)
            .update({User.password_hash: password_hash, User.password_changed: True})
        )
        self.db.commit()
        return updated > 0

    def list_profiles(self, ids: Iterable[str], emails: Iterable[str]) -> List[User]:
        ids, emails = list(ids), list(emails)
        if not ids and not emails:
            return []
        return (
            self.db.query(User)
            .filter(User.role == UserRole.STUDENT)
            .filter(or_(User.id.in_(ids), User.email.in_(emails)))
            .all()
        )


class StudentRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, data: StudentCreate) -> Student:
        """Stage a roster row; caller commits."""
        values = data.model_dump(exclude_none=True)
        student = Student(**values)
        self.db.add(student)
        return student

    def get(self, student_id: str) -> Optional[Student]:
        return self.db.query(Student).filter(Student.id == student_id).first()

    def list_by_faculty(self, faculty_id: str) -> List[Student]:
        return (
            self.db.query(Student)
            .filter(Student.faculty_id == faculty_id)
            .order_by(Student.section, Student.name)
            .all()
        )

    def roll_no_taken(self, roll_no: str, exclude_id: Optional[str] = None) -> bool:
        """Roll numbers are unique across every faculty's roster and profile."""
        student_query = self.db.query(Student.id).filter(Student.roll_no == roll_no)
        profile_query = self.db.query(User.id).filter(User.roll_no == roll_no)
        if exclude_id is not None:
            student_query = student_query.filter(Student.id != exclude_id)
            profile_query = profile_query.filter(User.id != exclude_id)
        return student_query.first() is not None or profile_query.first() is not None

    def update(self, student: Student, updates: StudentUpdate) -> Student:
        for field, value in updates.model_dump(exclude_unset=True).items():
            setattr(student, field, value)
        return student

    def delete(self, student_id: str) -> bool:
        deleted = self.db.query(Student).filter(Student.id == student_id).delete()
        return deleted > 0


class ExperimentRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, faculty_id: str, data: ExperimentCreate) -> Experiment:
        experiment = Experiment(faculty_id=faculty_id, **data.model_dump())
        self.db.add(experiment)
        self.db.commit()
        self.db.refresh(experiment)
        logger.log_db_write("insert", "experiments", experiment.id)
        return experiment

    def get(self, experiment_id: str) -> Optional[Experiment]:
        return self.db.query(Experiment).filter(Experiment.id == experiment_id).first()

    def list_by_faculty(self, faculty_id: str) -> List[Experiment]:
        return (
            self.db.query(Experiment)
            .filter(Experiment.faculty_id == faculty_id)
            .order_by(Experiment.created_at.desc())
            .all()
        )

    def update(self, experiment: Experiment, updates: ExperimentUpdate) -> Experiment:
        for field, value in updates.model_dump(exclude_unset=True).items():
            setattr(experiment, field, value)
        self.db.commit()
        self.db.refresh(experiment)
        return experiment

    def delete(self, experiment_id: str) -> bool:
        deleted = self.db.query(Experiment).filter(Experiment.id == experiment_id).delete()
        self.db.commit()
        return deleted > 0


class VivaQuestionRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, experiment_id: str, faculty_id: str, data: VivaQuestionCreate) -> VivaQuestion:
        a, b, c, d = data.options
        question = VivaQuestion(
            experiment_id=experiment_id,
            faculty_id=faculty_id,
            question=data.question,
            option_a=a,
            option_b=b,
            option_c=c,
            option_d=d,
            correct_answer=data.correct_answer,
        )
        self.db.add(question)
        self.db.commit()
        self.db.refresh(question)
        return question

    def get(self, question_id: str) -> Optional[VivaQuestion]:
        return self.db.query(VivaQuestion).filter(VivaQuestion.id == question_id).first()

    def list_by_experiment(self, experiment_id: str) -> List[VivaQuestion]:
        return (
            self.db.query(VivaQuestion)
            .filter(VivaQuestion.experiment_id == experiment_id)
            .order_by(VivaQuestion.created_at)
            .all()
        )

    def update(self, question: VivaQuestion, data: VivaQuestionCreate) -> VivaQuestion:
        question.question = data.question
        question.option_a, question.option_b, question.option_c, question.option_d = data.options
        question.correct_answer = data.correct_answer
        self.db.commit()
        self.db.refresh(question)
        return question

    def delete(self, question_id: str) -> bool:
        deleted = self.db.query(VivaQuestion).filter(VivaQuestion.id == question_id).delete()
        self.db.commit()
        return deleted > 0


class SubmissionRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, student_id: str, experiment_id: str, faculty_id: str, link: str) -> Submission:
        submission = Submission(
            student_id=student_id,
            experiment_id=experiment_id,
            faculty_id=faculty_id,
            submission_link=link,
            status=SubmissionStatus.PENDING,
        )
        self.db.add(submission)
        self.db.commit()
        self.db.refresh(submission)
        logger.log_db_write("insert", "submissions", submission.id)
        return submission

    def get(self, submission_id: str) -> Optional[Submission]:
        return self.db.query(Submission).filter(Submission.id == submission_id).first()

    def list_by_faculty(self, faculty_id: str) -> List[Submission]:
        return (
            self.db.query(Submission)
            .filter(Submission.faculty_id == faculty_id)
            .order_by(Submission.submitted_at.desc())
            .all()
        )

    def list_by_student(self, student_id: str) -> List[Submission]:
        return (
            self.db.query(Submission)
            .filter(Submission.student_id == student_id)
            .order_by(Submission.submitted_at.desc())
            .all()
        )

    def list_for_students(self, student_ids: Iterable[str]) -> List[Submission]:
        student_ids = list(student_ids)
        if not student_ids:
            return []
        return self.db.query(Submission).filter(Submission.student_id.in_(student_ids)).all()

    def set_status(self, submission: Submission, status: SubmissionStatus,
                   reviewer_id: str, feedback: Optional[str] = None) -> Submission:
        submission.status = status
        submission.reviewed_by = reviewer_id
        submission.feedback = feedback
        submission.approved_at = datetime.utcnow() if status == SubmissionStatus.APPROVED else None
        self.db.commit()
        self.db.refresh(submission)
        logger.log_db_write("update", "submissions", submission.id, status=status.value)
        return submission


class VivaAttemptRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, student_id: str, experiment_id: str, faculty_id: str,
               score: int, total_questions: int, answers: dict) -> VivaAttempt:
        attempt = VivaAttempt(
            student_id=student_id,
            experiment_id=experiment_id,
            faculty_id=faculty_id,
            score=score,
            total_questions=total_questions,
            answers=answers,
            completed_at=datetime.utcnow(),
        )
        self.db.add(attempt)
        self.db.commit()
        self.db.refresh(attempt)
        logger.log_db_write("insert", "viva_attempts", attempt.id)
        return attempt

    def get_for_pair(self, student_id: str, experiment_id: str) -> Optional[VivaAttempt]:
        return (
            self.db.query(VivaAttempt)
            .filter(VivaAttempt.student_id == student_id, VivaAttempt.experiment_id == experiment_id)
            .first()
        )

    def list_for_students(self, student_ids: Iterable[str]) -> List[VivaAttempt]:
        student_ids = list(student_ids)
        if not student_ids:
            return []
        return self.db.query(VivaAttempt).filter(VivaAttempt.student_id.in_(student_ids)).all()


class StudentRecordRepository:
    def __init__(self, db: Session, max_attempts: int = 3, retry_delay: float = 0.05):
        self.db = db
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def get_for_pair(self, student_id: str, experiment_id: str) -> Optional[StudentRecord]:
        return (
            self.db.query(StudentRecord)
            .filter(StudentRecord.student_id == student_id, StudentRecord.experiment_id == experiment_id)
            .first()
        )

    def list_by_faculty(self, faculty_id: str) -> List[StudentRecord]:
        return self.db.query(StudentRecord).filter(StudentRecord.faculty_id == faculty_id).all()

    def list_for_student(self, student_id: str) -> List[StudentRecord]:
        return self.db.query(StudentRecord).filter(StudentRecord.student_id == student_id).all()

    def upsert(self, student_id: str, experiment_id: str, faculty_id: str,
               mutate: Callable[[StudentRecord], None]) -> StudentRecord:
        """Insert or update the record for a pair and apply ``mutate`` to it.

        The (student_id, experiment_id) unique constraint turns a lost
        creation race into an IntegrityError; the transaction is rolled back
        and retried, and the retry takes the update path. ``mutate`` must be
        idempotent.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                record = self.get_for_pair(student_id, experiment_id)
                if record is None:
                    record = StudentRecord(
                        student_id=student_id,
                        experiment_id=experiment_id,
                        faculty_id=faculty_id,
                        observation_corrected=False,
                        record_submitted=False,
                    )
                    self.db.add(record)
                mutate(record)
                self.db.commit()
                self.db.refresh(record)
                logger.log_db_write("upsert", "student_records", record.id, attempt=attempt)
                return record
            except (IntegrityError, OperationalError) as e:
                self.db.rollback()
                last_error = e
                logger.warning(
                    f"Progress record upsert conflict for {student_id}/{experiment_id} "
                    f"(attempt {attempt}/{self.max_attempts}): {type(e).__name__}"
                )
                if attempt < self.max_attempts:
                    time.sleep(self.retry_delay * attempt)

        logger.log_error_with_context(last_error, context="student_records.upsert")
        raise StoreError("Failed to update record. Please try again.", operation="student_records.upsert")
