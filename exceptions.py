# backend/exceptions.py
"""
Custom Exceptions for the Lab Records backend.

Services raise these; the API layer turns them into JSON responses using
``status_code`` and ``to_dict()``.
"""

from typing import Any, Dict, Optional


class LabRecordsError(Exception):
    """Base exception for all Lab Records errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Authentication & Authorization Errors
# ============================================

class AuthenticationError(LabRecordsError):
    """User authentication failed"""

    status_code = 401

    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(message, code="AUTH_FAILED")


class AuthorizationError(LabRecordsError):
    """User not authorized for this action"""

    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message, code="NOT_AUTHORIZED")


# ============================================
# Resource Errors (404-type)
# ============================================

class ResourceNotFoundError(LabRecordsError):
    """Base class for not found errors"""

    status_code = 404

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} with ID '{resource_id}' not found",
            code=f"{resource_type.upper().replace(' ', '_')}_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id}
        )


class UserNotFoundError(ResourceNotFoundError):
    def __init__(self, user_id: str):
        super().__init__("User", user_id)


class StudentNotFoundError(ResourceNotFoundError):
    def __init__(self, student_id: str):
        super().__init__("Student", student_id)


class ExperimentNotFoundError(ResourceNotFoundError):
    def __init__(self, experiment_id: str):
        super().__init__("Experiment", experiment_id)


class VivaQuestionNotFoundError(ResourceNotFoundError):
    def __init__(self, question_id: str):
        super().__init__("Viva question", question_id)


class SubmissionNotFoundError(ResourceNotFoundError):
    def __init__(self, submission_id: str):
        super().__init__("Submission", submission_id)


# ============================================
# Conflict & Validation Errors
# ============================================

class DuplicateEntityError(LabRecordsError):
    """Entity already exists; raised before any write"""

    status_code = 409

    def __init__(self, resource_type: str, field: str, value: str):
        super().__init__(
            f"{resource_type} with {field} '{value}' already exists",
            code="DUPLICATE_ENTITY",
            details={"resource_type": resource_type, "field": field, "value": value}
        )


class ValidationError(LabRecordsError):
    """Input is well formed but violates a business rule"""

    status_code = 422

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


# ============================================
# Store Errors
# ============================================

class StoreError(LabRecordsError):
    """The backing store failed; the operation was aborted"""

    status_code = 503

    def __init__(self, message: str = "Database operation failed. Please try again.",
                 operation: Optional[str] = None):
        details = {"operation": operation} if operation else {}
        super().__init__(message, code="STORE_ERROR", details=details)
