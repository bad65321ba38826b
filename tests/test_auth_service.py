"""
Unit Tests for login, signup and enrollment
"""
import pytest
from faker import Faker

from auth_service import AuthService
from events import STUDENTS
from exceptions import AuthorizationError, DuplicateEntityError
from models import Student, User, UserRole
from schemas import FacultySignup, StudentEnroll, StudentUpdate
from security import verify_password

fake = Faker()


@pytest.fixture
def auth(db_session, settings, feed):
    return AuthService(db_session, settings, feed)


def _enroll(auth, faculty, **overrides):
    data = dict(
        name=fake.name(),
        roll_no=fake.unique.bothify("22CS####"),
        email=fake.unique.email(),
        section="A",
    )
    data.update(overrides)
    return auth.enroll_student(faculty, StudentEnroll(**data))


class TestLogin:

    def test_default_password_routes_to_roll_number(self, auth, faculty):
        student = _enroll(auth, faculty, roll_no="22CS0042")

        user = auth.login("22CS0042", "cse@nbkr")

        assert user is not None
        assert user.id == student.id
        assert user.role == UserRole.STUDENT
        assert user.password_changed is False

    def test_default_password_unknown_roll_number(self, auth, faculty):
        assert auth.login("NOPE", "cse@nbkr") is None

    def test_ambiguous_roll_number_is_refused(self, auth, faculty, other_faculty, monkeypatch):
        # Databases created before roll numbers were unique can hold two profiles
        first = _enroll(auth, faculty)
        second = _enroll(auth, other_faculty)
        monkeypatch.setattr(auth.users, "find_students_by_roll_no", lambda roll_no: [first, second])

        assert auth.login(first.roll_no, "cse@nbkr") is None

    def test_default_password_does_not_match_faculty_email(self, auth, faculty):
        assert auth.login(faculty.email, "cse@nbkr") is None

    def test_faculty_login(self, auth, faculty, faculty_password):
        user = auth.login(faculty.email, faculty_password)

        assert user is not None
        assert user.id == faculty.id
        assert user.role == UserRole.FACULTY

    def test_faculty_wrong_password(self, auth, faculty):
        assert auth.login(faculty.email, "wrong-password") is None

    def test_student_email_with_other_password_is_rejected(self, auth, faculty):
        student = _enroll(auth, faculty)
        assert auth.login(student.email, "anything-else") is None

    def test_unknown_email(self, auth):
        assert auth.login("nobody@example.com", "whatever") is None


class TestSignup:

    def test_signup_creates_faculty(self, auth, db_session):
        user = auth.signup(FacultySignup(name="Dr. Lata", email="lata@example.com", password="secret123"))

        assert user.role == UserRole.FACULTY
        assert user.password_hash != "secret123"
        assert verify_password("secret123", user.password_hash)
        assert auth.login("lata@example.com", "secret123").id == user.id

    def test_duplicate_email_rejected_before_write(self, auth, db_session, faculty):
        with pytest.raises(DuplicateEntityError):
            auth.signup(FacultySignup(name="Copy", email=faculty.email, password="secret123"))

        assert db_session.query(User).filter(User.email == faculty.email).count() == 1


class TestEnrollment:

    def test_enroll_creates_roster_row_and_profile(self, auth, db_session, faculty):
        student = _enroll(auth, faculty)

        profile = db_session.query(User).filter(User.id == student.id).one()
        assert profile.role == UserRole.STUDENT
        assert profile.password_changed is False
        assert profile.password_hash is None
        assert profile.faculty_id == faculty.id
        assert student.faculty_id == faculty.id

    def test_duplicate_email(self, auth, faculty):
        student = _enroll(auth, faculty)
        with pytest.raises(DuplicateEntityError):
            _enroll(auth, faculty, email=student.email)

    def test_duplicate_roll_number(self, auth, db_session, faculty):
        _enroll(auth, faculty, roll_no="22CS0001")
        with pytest.raises(DuplicateEntityError):
            _enroll(auth, faculty, roll_no="22CS0001")
        assert db_session.query(Student).filter(Student.roll_no == "22CS0001").count() == 1

    def test_roll_number_unique_across_faculties(self, auth, db_session, faculty, other_faculty):
        first = _enroll(auth, faculty, roll_no="22CS0007")
        with pytest.raises(DuplicateEntityError):
            _enroll(auth, other_faculty, roll_no="22CS0007")

        assert db_session.query(Student).filter(Student.roll_no == "22CS0007").count() == 1
        assert auth.login("22CS0007", "cse@nbkr").id == first.id

    def test_update_to_taken_email_is_a_conflict(self, auth, faculty):
        student = _enroll(auth, faculty)
        with pytest.raises(DuplicateEntityError):
            auth.update_student(faculty, student.id, StudentUpdate(email=faculty.email))

    def test_update_to_taken_roll_number_is_a_conflict(self, auth, faculty, other_faculty):
        _enroll(auth, other_faculty, roll_no="22CS0100")
        student = _enroll(auth, faculty, roll_no="22CS0101")
        with pytest.raises(DuplicateEntityError):
            auth.update_student(faculty, student.id, StudentUpdate(roll_no="22CS0100"))

    def test_update_keeping_own_roll_number(self, auth, faculty):
        student = _enroll(auth, faculty, roll_no="22CS0102")
        updated = auth.update_student(faculty, student.id, StudentUpdate(roll_no="22CS0102", section="D"))
        assert updated.section == "D"

    def test_roster_changes_publish_student_events(self, auth, feed, faculty):
        events = []
        feed.subscribe(faculty.id, events.append)

        student = _enroll(auth, faculty)
        auth.update_student(faculty, student.id, StudentUpdate(name="Renamed"))
        auth.delete_student(faculty, student.id)

        assert [e.collection for e in events] == [STUDENTS, STUDENTS, STUDENTS]
        assert all(e.student_id is None and e.experiment_id is None for e in events)

    def test_list_ordered_by_section_then_name(self, auth, faculty):
        _enroll(auth, faculty, name="Zara", section="A")
        _enroll(auth, faculty, name="Anil", section="B")
        _enroll(auth, faculty, name="Bala", section="A")

        assert [s.name for s in auth.list_students(faculty.id)] == ["Bala", "Zara", "Anil"]

    def test_update_student_updates_profile(self, auth, db_session, faculty):
        student = _enroll(auth, faculty)

        auth.update_student(faculty, student.id, StudentUpdate(section="C", name="Renamed"))

        profile = db_session.query(User).filter(User.id == student.id).one()
        assert student.section == "C"
        assert profile.section == "C"
        assert profile.name == "Renamed"

    def test_update_other_faculty_student(self, auth, faculty, other_faculty):
        student = _enroll(auth, faculty)
        with pytest.raises(AuthorizationError):
            auth.update_student(other_faculty, student.id, StudentUpdate(section="C"))

    def test_delete_student_removes_profile(self, auth, db_session, faculty):
        student = _enroll(auth, faculty)
        student_id = student.id

        assert auth.delete_student(faculty, student_id) is True

        assert db_session.query(Student).filter(Student.id == student_id).count() == 0
        assert db_session.query(User).filter(User.id == student_id).count() == 0

    def test_change_password_sets_flag(self, auth, db_session, faculty):
        student = _enroll(auth, faculty)

        assert auth.change_password(student.id, "newpass123") is True

        profile = db_session.query(User).filter(User.id == student.id).one()
        db_session.refresh(profile)
        assert profile.password_changed is True
        assert verify_password("newpass123", profile.password_hash)
