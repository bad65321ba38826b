# backend/main.py
import time
from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth_service import AuthService
from config import Settings, get_settings
from database import Database, get_db
from events import ChangeFeed
from exceptions import LabRecordsError, ResourceNotFoundError
from lab_service import LabService
from logging_config import (
    bind_request, bind_user, logger, new_request_id, setup_logging,
)
from models import User, UserRole
from records import (
    RecordWorkflow, TrackerRegistry, filter_records, submission_link_view,
    summarize_records,
)
from repositories import UserRepository
from schemas import (
    ExperimentCreate, ExperimentProgress, ExperimentResponse, ExperimentUpdate,
    FacultySignup, PasswordChange, RecordAction, RecordsSummary,
    StudentEnroll, StudentRecordRow, StudentResponse, StudentUpdate,
    SubmissionCreate, SubmissionLinkView, SubmissionReject, SubmissionResponse,
    Token, UserResponse, VivaAnswers, VivaAttemptResponse, VivaQuestionCreate,
    VivaQuestionPublic, VivaQuestionResponse,
)
from security import create_access_token, decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

STATUS_PATTERN = "^(all|observation_pending|record_pending|completed)$"

# ==================== DEPENDENCIES ====================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def get_trackers(request: Request) -> TrackerRegistry:
    return request.app.state.trackers


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    user_id = decode_access_token(token, settings)
    if user_id is None:
        raise credentials_exception

    user = UserRepository(db).get(user_id)
    if user is None:
        raise credentials_exception
    bind_user(user.id)
    return user


def require_faculty(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.FACULTY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Faculty access required")
    return current_user


def require_student(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.STUDENT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Student access required")
    return current_user


def get_auth_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    feed: ChangeFeed = Depends(get_feed),
) -> AuthService:
    return AuthService(db, settings, feed)


def get_lab_service(db: Session = Depends(get_db), feed: ChangeFeed = Depends(get_feed)) -> LabService:
    return LabService(db, feed)


def get_workflow(
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
    settings: Settings = Depends(get_app_settings),
) -> RecordWorkflow:
    return RecordWorkflow(db, feed, settings)


# ==================== APP ====================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database(settings.DATABASE_URL, echo=settings.DB_ECHO)
        database.create_all()
        feed = ChangeFeed()
        app.state.database = database
        app.state.feed = feed
        app.state.trackers = TrackerRegistry(
            database.session, feed, incremental=settings.RECORDS_INCREMENTAL_REFRESH
        )
        logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")
        yield
        app.state.trackers.close()
        database.close()
        logger.info(f"{settings.APP_NAME} stopped")

    app = FastAPI(title=settings.APP_NAME, version="1.0.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or new_request_id()
        bind_request(request_id)
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.log_request(request.method, request.url.path, response.status_code, duration_ms)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(LabRecordsError)
    async def lab_records_error_handler(request: Request, exc: LabRecordsError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.log_error_with_context(exc, context=f"{request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": {"code": "STORE_ERROR", "message": "Database operation failed. Please try again."}},
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # ==================== ROUTES: AUTH ====================

    @app.post("/auth/signup", response_model=UserResponse, status_code=201)
    def signup(data: FacultySignup, auth: AuthService = Depends(get_auth_service)):
        """Register a faculty account"""
        return auth.signup(data)

    @app.post("/auth/login", response_model=Token)
    def login(
        form_data: OAuth2PasswordRequestForm = Depends(),
        auth: AuthService = Depends(get_auth_service),
        settings: Settings = Depends(get_app_settings),
    ):
        """Faculty sign in with email; students with roll number and the default password"""
        user = auth.login(form_data.username, form_data.password)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Incorrect credentials",
            )
        access_token = create_access_token({"sub": user.id, "role": user.role.value}, settings)
        return {"access_token": access_token, "token_type": "bearer"}

    @app.get("/auth/me", response_model=UserResponse)
    def get_me(current_user: User = Depends(get_current_user)):
        return current_user

    @app.post("/auth/change-password")
    def change_password(
        data: PasswordChange,
        current_user: User = Depends(get_current_user),
        auth: AuthService = Depends(get_auth_service),
    ):
        return {"success": auth.change_password(current_user.id, data.new_password)}

    # ==================== ROUTES: STUDENTS ====================

    @app.post("/students", response_model=StudentResponse, status_code=201)
    def enroll_student(
        data: StudentEnroll,
        faculty: User = Depends(require_faculty),
        auth: AuthService = Depends(get_auth_service),
    ):
        return auth.enroll_student(faculty, data)

    @app.get("/students", response_model=List[StudentResponse])
    def list_students(faculty: User = Depends(require_faculty), auth: AuthService = Depends(get_auth_service)):
        return auth.list_students(faculty.id)

    @app.put("/students/{student_id}", response_model=StudentResponse)
    def update_student(
        student_id: str,
        updates: StudentUpdate,
        faculty: User = Depends(require_faculty),
        auth: AuthService = Depends(get_auth_service),
    ):
        return auth.update_student(faculty, student_id, updates)

    @app.delete("/students/{student_id}")
    def delete_student(
        student_id: str,
        faculty: User = Depends(require_faculty),
        auth: AuthService = Depends(get_auth_service),
    ):
        return {"success": auth.delete_student(faculty, student_id)}

    # ==================== ROUTES: EXPERIMENTS ====================

    @app.post("/experiments", response_model=ExperimentResponse, status_code=201)
    def create_experiment(
        data: ExperimentCreate,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.create_experiment(faculty, data)

    @app.get("/experiments", response_model=List[ExperimentResponse])
    def list_experiments(
        current_user: User = Depends(get_current_user),
        labs: LabService = Depends(get_lab_service),
    ):
        """Faculty see their own experiments; students see their faculty's"""
        owner = current_user.id if current_user.role == UserRole.FACULTY else current_user.faculty_id
        return labs.list_experiments(owner) if owner else []

    @app.put("/experiments/{experiment_id}", response_model=ExperimentResponse)
    def update_experiment(
        experiment_id: str,
        data: ExperimentUpdate,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.update_experiment(faculty, experiment_id, data)

    @app.delete("/experiments/{experiment_id}")
    def delete_experiment(
        experiment_id: str,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return {"success": labs.delete_experiment(faculty, experiment_id)}

    # ==================== ROUTES: VIVA ====================

    @app.post("/experiments/{experiment_id}/viva-questions", response_model=VivaQuestionResponse, status_code=201)
    def add_viva_question(
        experiment_id: str,
        data: VivaQuestionCreate,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.add_viva_question(faculty, experiment_id, data)

    @app.get("/experiments/{experiment_id}/viva-questions", response_model=List[Union[VivaQuestionResponse, VivaQuestionPublic]])
    def list_viva_questions(
        experiment_id: str,
        current_user: User = Depends(get_current_user),
        labs: LabService = Depends(get_lab_service),
    ):
        questions = labs.list_viva_questions(current_user, experiment_id)
        if current_user.role == UserRole.FACULTY:
            return [VivaQuestionResponse.model_validate(q) for q in questions]
        return [VivaQuestionPublic.model_validate(q) for q in questions]

    @app.put("/viva-questions/{question_id}", response_model=VivaQuestionResponse)
    def update_viva_question(
        question_id: str,
        data: VivaQuestionCreate,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.update_viva_question(faculty, question_id, data)

    @app.delete("/viva-questions/{question_id}")
    def delete_viva_question(
        question_id: str,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return {"success": labs.delete_viva_question(faculty, question_id)}

    @app.post("/experiments/{experiment_id}/viva", response_model=VivaAttemptResponse, status_code=201)
    def take_viva(
        experiment_id: str,
        data: VivaAnswers,
        student: User = Depends(require_student),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.take_viva(student, experiment_id, data.answers)

    # ==================== ROUTES: SUBMISSIONS ====================

    @app.post("/submissions", response_model=SubmissionResponse, status_code=201)
    def submit_work(
        data: SubmissionCreate,
        student: User = Depends(require_student),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.submit_work(student, data.experiment_id, data.submission_link)

    @app.get("/submissions", response_model=List[SubmissionResponse])
    def list_submissions(
        current_user: User = Depends(get_current_user),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.list_submissions(current_user)

    @app.post("/submissions/{submission_id}/approve", response_model=SubmissionResponse)
    def approve_submission(
        submission_id: str,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.review_submission(faculty, submission_id, approve=True)

    @app.post("/submissions/{submission_id}/reject", response_model=SubmissionResponse)
    def reject_submission(
        submission_id: str,
        data: SubmissionReject,
        faculty: User = Depends(require_faculty),
        labs: LabService = Depends(get_lab_service),
    ):
        return labs.review_submission(faculty, submission_id, approve=False, feedback=data.feedback)

    # ==================== ROUTES: RECORDS ====================

    @app.get("/records", response_model=List[StudentRecordRow])
    def list_records(
        search: Optional[str] = None,
        experiment_id: Optional[str] = None,
        section: Optional[str] = None,
        status: str = Query("all", pattern=STATUS_PATTERN),
        refresh: bool = False,
        faculty: User = Depends(require_faculty),
        trackers: TrackerRegistry = Depends(get_trackers),
    ):
        """Approved submissions with their record-book progress"""
        tracker = trackers.get(faculty.id)
        rows = tracker.refresh() if refresh else tracker.rows
        return filter_records(rows, search=search, experiment_id=experiment_id, section=section, status=status)

    @app.get("/records/summary", response_model=RecordsSummary)
    def records_summary(
        faculty: User = Depends(require_faculty),
        trackers: TrackerRegistry = Depends(get_trackers),
    ):
        return summarize_records(trackers.get(faculty.id).rows)

    @app.post("/records/observation-corrected", response_model=List[StudentRecordRow])
    def mark_observation_corrected(
        action: RecordAction,
        faculty: User = Depends(require_faculty),
        workflow: RecordWorkflow = Depends(get_workflow),
        trackers: TrackerRegistry = Depends(get_trackers),
    ):
        workflow.mark_observation_corrected(action.student_id, action.experiment_id, faculty)
        return trackers.get(faculty.id).rows

    @app.post("/records/record-submitted", response_model=List[StudentRecordRow])
    def mark_record_submitted(
        action: RecordAction,
        faculty: User = Depends(require_faculty),
        workflow: RecordWorkflow = Depends(get_workflow),
        trackers: TrackerRegistry = Depends(get_trackers),
    ):
        workflow.mark_record_submitted(action.student_id, action.experiment_id, faculty)
        return trackers.get(faculty.id).rows

    @app.get("/records/link", response_model=SubmissionLinkView)
    def record_link(
        student_id: str,
        experiment_id: str,
        faculty: User = Depends(require_faculty),
        trackers: TrackerRegistry = Depends(get_trackers),
    ):
        for row in trackers.get(faculty.id).rows:
            if row.student_id == student_id and row.experiment_id == experiment_id:
                return submission_link_view(row)
        raise ResourceNotFoundError("Record", f"{student_id}/{experiment_id}")

    # ==================== ROUTES: PROGRESS ====================

    @app.get("/progress/me", response_model=List[ExperimentProgress])
    def my_progress(student: User = Depends(require_student), labs: LabService = Depends(get_lab_service)):
        return labs.student_progress(student)

    # ==================== ROOT ====================

    @app.get("/")
    def root():
        return {
            "message": "Lab Records API",
            "version": "1.0.0",
            "docs": "/docs"
        }

    @app.get("/health")
    def health(request: Request):
        return {"status": "healthy", "environment": request.app.state.settings.ENVIRONMENT}


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
