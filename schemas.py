# backend/schemas.py
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from models import SubmissionStatus, UserRole

# ==================== AUTH ====================

class FacultySignup(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class PasswordChange(BaseModel):
    new_password: str = Field(..., min_length=6)


class Token(BaseModel):
    access_token: str
    token_type: str


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: UserRole
    roll_no: Optional[str] = None
    section: Optional[str] = None
    faculty_id: Optional[str] = None
    password_changed: bool = False

    class Config:
        from_attributes = True


class UserCreate(BaseModel):
    """Persistence request for a new profile."""
    name: str
    email: str
    role: UserRole
    password_hash: Optional[str] = None
    roll_no: Optional[str] = None
    section: Optional[str] = None
    faculty_id: Optional[str] = None
    password_changed: bool = False

# ==================== STUDENTS ====================

class StudentEnroll(BaseModel):
    name: str = Field(..., min_length=1)
    roll_no: str = Field(..., min_length=1)
    email: EmailStr
    section: Optional[str] = None


class StudentCreate(StudentEnroll):
    """Persistence request for a roster row."""
    id: Optional[str] = None
    email: str
    faculty_id: str


class StudentUpdate(BaseModel):
    name: Optional[str] = None
    roll_no: Optional[str] = None
    email: Optional[EmailStr] = None
    section: Optional[str] = None


class StudentResponse(BaseModel):
    id: str
    name: str
    email: str
    roll_no: str
    section: Optional[str]
    faculty_id: str

    class Config:
        from_attributes = True

# ==================== EXPERIMENTS ====================

class ExperimentCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    pdf_url: Optional[str] = None


class ExperimentUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    pdf_url: Optional[str] = None


class ExperimentResponse(BaseModel):
    id: str
    title: str
    description: Optional[str]
    pdf_url: Optional[str]
    faculty_id: str
    created_at: Optional[datetime]

    class Config:
        from_attributes = True

# ==================== VIVA ====================

class VivaQuestionCreate(BaseModel):
    question: str = Field(..., min_length=1)
    options: List[str]
    correct_answer: int

    @field_validator("options")
    @classmethod
    def four_options(cls, v: List[str]) -> List[str]:
        if len(v) != 4:
            raise ValueError("exactly four options are required")
        return v

    @field_validator("correct_answer")
    @classmethod
    def answer_in_range(cls, v: int) -> int:
        if not 0 <= v <= 3:
            raise ValueError("correct_answer must be between 0 and 3")
        return v


class VivaQuestionPublic(BaseModel):
    """Question as shown to a student, without the answer key."""
    id: str
    experiment_id: str
    question: str
    options: List[str]

    class Config:
        from_attributes = True


class VivaQuestionResponse(VivaQuestionPublic):
    correct_answer: int
    faculty_id: str


class VivaAnswers(BaseModel):
    # question id -> chosen option index
    answers: Dict[str, int]


class VivaAttemptResponse(BaseModel):
    id: str
    student_id: str
    experiment_id: str
    score: int
    total_questions: int
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True

# ==================== SUBMISSIONS ====================

class SubmissionCreate(BaseModel):
    experiment_id: str
    submission_link: str = Field(..., min_length=1)


class SubmissionReject(BaseModel):
    feedback: Optional[str] = None


class SubmissionResponse(BaseModel):
    id: str
    student_id: str
    experiment_id: str
    status: SubmissionStatus
    submission_link: Optional[str] = None
    feedback: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    class Config:
        from_attributes = True

# ==================== RECORDS ====================

class RecordAction(BaseModel):
    student_id: str
    experiment_id: str


class StudentRecordRow(BaseModel):
    """One aggregated (student, experiment) row of the records view."""
    id: str
    student_id: str
    student_name: str
    roll_no: Optional[str] = None
    email: Optional[str] = None
    section: Optional[str] = None
    experiment_id: str
    experiment_title: str
    submission_id: str
    submission_status: SubmissionStatus
    submission_link: Optional[str] = None
    submitted_date: Optional[datetime] = None
    approved_date: Optional[datetime] = None
    observation_corrected: bool = False
    observation_corrected_date: Optional[datetime] = None
    observation_corrected_by: Optional[str] = None
    record_submitted: bool = False
    record_submitted_date: Optional[datetime] = None
    record_submitted_by: Optional[str] = None
    viva_completed: bool = False
    viva_score: Optional[int] = None
    viva_date: Optional[datetime] = None


class RecordsSummary(BaseModel):
    total: int
    observation_corrected: int
    record_submitted: int
    viva_completed: int


class SubmissionLinkView(BaseModel):
    link: Optional[str] = None
    message: Optional[str] = None

# ==================== PROGRESS ====================

class ExperimentProgress(BaseModel):
    """A student's own view of one experiment."""
    experiment_id: str
    experiment_title: str
    submission_status: Optional[SubmissionStatus] = None
    viva_completed: bool = False
    viva_score: Optional[int] = None
    observation_corrected: bool = False
    record_submitted: bool = False
