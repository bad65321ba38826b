# backend/auth_service.py
"""
Login and enrollment.

Two login paths share one entry point: the shared student password routes the
identifier to a roll-number lookup; anything else is a faculty email login.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from config import Settings
from events import STUDENTS, ChangeEvent, ChangeFeed
from exceptions import (
    AuthorizationError, DuplicateEntityError, StudentNotFoundError,
    UserNotFoundError,
)
from logging_config import logger
from models import Student, User, UserRole
from repositories import StudentRepository, UserRepository
from schemas import (
    FacultySignup, StudentCreate, StudentEnroll, StudentUpdate, UserCreate,
)
from security import get_password_hash, verify_password


class AuthService:
    def __init__(self, db: Session, settings: Settings, feed: ChangeFeed):
        self.db = db
        self.settings = settings
        self.feed = feed
        self.users = UserRepository(db)
        self.students = StudentRepository(db)

    def login(self, identifier: str, password: str) -> Optional[User]:
        if password == self.settings.DEFAULT_STUDENT_PASSWORD:
            matches = self.users.find_students_by_roll_no(identifier)
            if len(matches) != 1:
                reason = "unknown roll number" if not matches else "ambiguous roll number"
                logger.log_auth_event("student_login", False, identifier, reason)
                return None
            logger.log_auth_event("student_login", True, identifier)
            return matches[0]

        user = self.users.get_by_email(identifier)
        if user is None or user.role != UserRole.FACULTY:
            logger.log_auth_event("faculty_login", False, identifier, "no faculty account")
            return None
        if not verify_password(password, user.password_hash):
            logger.log_auth_event("faculty_login", False, identifier, "wrong password")
            return None
        logger.log_auth_event("faculty_login", True, identifier)
        return user

    def signup(self, data: FacultySignup) -> User:
        if self.users.get_by_email(data.email):
            logger.log_auth_event("signup", False, data.email, "email already registered")
            raise DuplicateEntityError("User", "email", data.email)

        user = self.users.create(UserCreate(
            name=data.name,
            email=data.email,
            role=UserRole.FACULTY,
            password_hash=get_password_hash(data.password),
            password_changed=True,
        ))
        logger.log_auth_event("signup", True, data.email)
        return user

    def change_password(self, user_id: str, new_password: str) -> bool:
        if self.users.get(user_id) is None:
            raise UserNotFoundError(user_id)
        return self.users.set_password(user_id, get_password_hash(new_password))

    # ==================== ENROLLMENT ====================

    def enroll_student(self, faculty: User, data: StudentEnroll) -> Student:
        if self.users.get_by_email(data.email):
            raise DuplicateEntityError("Student", "email", data.email)
        if self.students.roll_no_taken(data.roll_no):
            raise DuplicateEntityError("Student", "roll number", data.roll_no)

        student = self.students.create(StudentCreate(faculty_id=faculty.id, **data.model_dump()))
        self.db.flush()
        self.users.create_with_id(student.id, UserCreate(
            name=data.name,
            email=data.email,
            role=UserRole.STUDENT,
            roll_no=data.roll_no,
            section=data.section,
            faculty_id=faculty.id,
            password_changed=False,
        ))
        self.db.commit()
        self.db.refresh(student)
        logger.info(f"Enrolled student {student.roll_no} for faculty {faculty.id}")
        self.feed.publish(ChangeEvent(STUDENTS, faculty.id))
        return student

    def list_students(self, faculty_id: str) -> List[Student]:
        return self.students.list_by_faculty(faculty_id)

    def _owned_student(self, faculty: User, student_id: str) -> Student:
        student = self.students.get(student_id)
        if student is None:
            raise StudentNotFoundError(student_id)
        if student.faculty_id != faculty.id:
            raise AuthorizationError("Student is not enrolled with this faculty")
        return student

    def update_student(self, faculty: User, student_id: str, updates: StudentUpdate) -> Student:
        student = self._owned_student(faculty, student_id)
        changes = updates.model_dump(exclude_unset=True)
        if changes.get("email") and self.users.email_taken(changes["email"], exclude_id=student_id):
            raise DuplicateEntityError("Student", "email", changes["email"])
        if changes.get("roll_no") and self.students.roll_no_taken(changes["roll_no"], exclude_id=student_id):
            raise DuplicateEntityError("Student", "roll number", changes["roll_no"])

        self.students.update(student, updates)
        profile = self.users.get(student_id)
        if profile is not None and profile.role == UserRole.STUDENT:
            for field, value in changes.items():
                setattr(profile, field, value)

        self.db.commit()
        self.db.refresh(student)
        self.feed.publish(ChangeEvent(STUDENTS, faculty.id))
        return student

    def delete_student(self, faculty: User, student_id: str) -> bool:
        self._owned_student(faculty, student_id)
        deleted = self.students.delete(student_id)
        self.db.query(User).filter(User.id == student_id, User.role == UserRole.STUDENT).delete()
        self.db.commit()
        logger.info(f"Deleted student {student_id}")
        # Submissions and progress records for the student went with the roster row
        self.feed.publish(ChangeEvent(STUDENTS, faculty.id))
        return deleted
