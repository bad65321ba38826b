"""
Lab Records - Test Configuration and Fixtures
"""
from datetime import datetime

import pytest
from faker import Faker
from fastapi.testclient import TestClient

from config import Settings
from database import Database
from events import ChangeFeed
from main import create_app
from models import (
    Experiment, Student, Submission, SubmissionStatus, User, UserRole,
    VivaAttempt,
)
from security import get_password_hash

fake = Faker()

FACULTY_PASSWORD = "facultypass123"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        SECRET_KEY="test-secret-key-for-testing-only",
        DEFAULT_STUDENT_PASSWORD="cse@nbkr",
        UPSERT_RETRY_DELAY=0,
    )


@pytest.fixture
def database(settings):
    database = Database(settings.DATABASE_URL)
    database.create_all()
    yield database
    database.close()


@pytest.fixture
def db_session(database):
    with database.session() as session:
        yield session


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


def _make_faculty(db) -> User:
    user = User(
        name=fake.name(),
        email=fake.unique.email(),
        role=UserRole.FACULTY,
        password_hash=get_password_hash(FACULTY_PASSWORD),
        password_changed=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def faculty_password() -> str:
    return FACULTY_PASSWORD


@pytest.fixture
def faculty(db_session) -> User:
    return _make_faculty(db_session)


@pytest.fixture
def other_faculty(db_session) -> User:
    return _make_faculty(db_session)


@pytest.fixture
def make_student(db_session):
    """Roster row, plus a profile sharing its id unless with_profile=False."""
    def _make(faculty: User, with_profile: bool = True, section: str = "A", **overrides) -> Student:
        student = Student(
            name=overrides.pop("name", fake.name()),
            email=overrides.pop("email", fake.unique.email()),
            roll_no=overrides.pop("roll_no", fake.unique.bothify("21CS####")),
            section=section,
            faculty_id=faculty.id,
            **overrides,
        )
        db_session.add(student)
        db_session.flush()
        if with_profile:
            db_session.add(User(
                id=student.id,
                name=student.name,
                email=student.email,
                role=UserRole.STUDENT,
                roll_no=student.roll_no,
                section=student.section,
                faculty_id=faculty.id,
                password_changed=False,
            ))
        db_session.commit()
        db_session.refresh(student)
        return student
    return _make


@pytest.fixture
def make_experiment(db_session):
    def _make(faculty: User, title: str = None) -> Experiment:
        experiment = Experiment(
            title=title or fake.sentence(nb_words=3),
            description=fake.sentence(),
            pdf_url=fake.url(),
            faculty_id=faculty.id,
        )
        db_session.add(experiment)
        db_session.commit()
        db_session.refresh(experiment)
        return experiment
    return _make


@pytest.fixture
def make_submission(db_session):
    def _make(student: Student, experiment: Experiment,
              status: SubmissionStatus = SubmissionStatus.APPROVED, **links) -> Submission:
        if not links:
            links = {"submission_link": fake.url()}
        submission = Submission(
            student_id=student.id,
            experiment_id=experiment.id,
            faculty_id=experiment.faculty_id,
            status=status,
            submitted_at=datetime.utcnow(),
            approved_at=datetime.utcnow() if status == SubmissionStatus.APPROVED else None,
            **links,
        )
        db_session.add(submission)
        db_session.commit()
        db_session.refresh(submission)
        return submission
    return _make


@pytest.fixture
def make_viva_attempt(db_session):
    def _make(student: Student, experiment: Experiment, score: int = 0) -> VivaAttempt:
        attempt = VivaAttempt(
            student_id=student.id,
            experiment_id=experiment.id,
            faculty_id=experiment.faculty_id,
            score=score,
            total_questions=5,
            answers={},
            completed_at=datetime.utcnow(),
        )
        db_session.add(attempt)
        db_session.commit()
        db_session.refresh(attempt)
        return attempt
    return _make
