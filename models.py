# backend/models.py
import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


class UserRole(str, enum.Enum):
    FACULTY = "faculty"
    STUDENT = "student"


class SubmissionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class User(Base):
    """Login identity and profile for faculty and students."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=True)
    role = Column(Enum(UserRole, values_callable=lambda e: [m.value for m in e]), nullable=False, index=True)
    roll_no = Column(String(50), unique=True, index=True, nullable=True)
    section = Column(String(10), nullable=True)
    faculty_id = Column(String(36), index=True, nullable=True)
    password_changed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relations
    experiments = relationship("Experiment", back_populates="faculty")


class Student(Base):
    """A faculty's roster entry. Shares its id with the profile when enrolled here."""
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), index=True, nullable=False)
    roll_no = Column(String(50), unique=True, index=True, nullable=False)
    section = Column(String(10), nullable=True)
    faculty_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Experiment(Base):
    __tablename__ = "experiments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    pdf_url = Column(Text, nullable=True)
    faculty_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relations
    faculty = relationship("User", back_populates="experiments")
    viva_questions = relationship(
        "VivaQuestion",
        back_populates="experiment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="VivaQuestion.created_at",
    )


class VivaQuestion(Base):
    __tablename__ = "viva_questions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), index=True, nullable=False)
    question = Column(Text, nullable=False)
    option_a = Column(String(500), nullable=False)
    option_b = Column(String(500), nullable=False)
    option_c = Column(String(500), nullable=False)
    option_d = Column(String(500), nullable=False)
    correct_answer = Column(Integer, nullable=False)  # index into options, 0..3
    faculty_id = Column(String(36), index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relations
    experiment = relationship("Experiment", back_populates="viva_questions")

    @property
    def options(self):
        return [self.option_a, self.option_b, self.option_c, self.option_d]


class Submission(Base):
    """Proof-of-work for one experiment. The link may sit under a legacy column."""
    __tablename__ = "submissions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(36), ForeignKey("students.id", ondelete="CASCADE"), index=True, nullable=False)
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), index=True, nullable=False)
    faculty_id = Column(String(36), index=True, nullable=False)
    status = Column(
        Enum(SubmissionStatus, values_callable=lambda e: [m.value for m in e]),
        default=SubmissionStatus.PENDING,
        nullable=False,
    )
    submission_link = Column(Text, nullable=True)
    submission_url = Column(Text, nullable=True)
    link = Column(Text, nullable=True)
    feedback = Column(Text, nullable=True)
    submitted_at = Column(DateTime, default=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(36), nullable=True)


class VivaAttempt(Base):
    __tablename__ = "viva_attempts"
    __table_args__ = (
        UniqueConstraint("student_id", "experiment_id", name="uq_viva_attempt_pair"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(36), ForeignKey("students.id", ondelete="CASCADE"), index=True, nullable=False)
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), index=True, nullable=False)
    faculty_id = Column(String(36), index=True, nullable=False)
    score = Column(Integer, nullable=False, default=0)
    total_questions = Column(Integer, nullable=False, default=0)
    answers = Column(JSON)
    completed_at = Column(DateTime, default=datetime.utcnow)


class StudentRecord(Base):
    """Record-book progress for one (student, experiment) pair."""
    __tablename__ = "student_records"
    __table_args__ = (
        UniqueConstraint("student_id", "experiment_id", name="uq_student_record_pair"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(36), ForeignKey("students.id", ondelete="CASCADE"), index=True, nullable=False)
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), index=True, nullable=False)
    faculty_id = Column(String(36), index=True, nullable=False)
    observation_corrected = Column(Boolean, default=False, nullable=False)
    observation_corrected_date = Column(DateTime, nullable=True)
    observation_corrected_by = Column(String(36), nullable=True)
    record_submitted = Column(Boolean, default=False, nullable=False)
    record_submitted_date = Column(DateTime, nullable=True)
    record_submitted_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
