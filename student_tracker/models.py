"""Data models for the Student Standing Tracker application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from student_tracker import config


class Role(str, Enum):
    """Organizational roles. Access scope per role lives in ``scope.py``."""
    VC = "VC"
    DVC_ACADEMIC = "DVC_ACADEMIC"
    DEAN = "DEAN"
    HOD = "HOD"
    ADVISOR = "ADVISOR"
    LECTURER = "LECTURER"
    REGISTRY = "REGISTRY"
    IT_ADMIN = "IT_ADMIN"


class Term(str, Enum):
    FIRST = "1"
    SECOND = "2"


class RiskLabel(str, Enum):
    FINANCIAL_RISK = "Financial Risk"
    ATTENDANCE_RISK = "Attendance Risk"
    ACADEMIC_RISK = "Academic Risk"
    INCOMPLETE_RECORD = "Incomplete Record"
    NO_ISSUES = "No Issues"


class EventKind(str, Enum):
    RECORD_CREATED = "record-created"
    RECORD_UPDATED = "record-updated"
    RECORD_DELETED = "record-deleted"
    BATCH_IMPORTED = "batch-imported"


class InterventionType(str, Enum):
    COUNSELING = "Counseling"
    ACADEMIC_SUPPORT = "Academic Support"
    FINANCIAL_AID = "Financial Aid Review"
    PARENT_MEETING = "Parent Meeting"


class InterventionStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"


# Accepted legacy spellings for record fields, in precedence order.
# The first key present with a non-None value wins.
LEGACY_FIELD_ALIASES: Dict[str, tuple] = {
    "student_number": ("student_number", "studentNumber"),
    "registration_number": ("registration_number", "studentRegistrationNumber"),
    "program": ("program", "course"),
    "year_of_study": ("year_of_study", "yearOfStudy"),
    "semester_of_study": ("semester_of_study", "semesterOfStudy"),
    "attendance": ("attendance", "attendance_rate", "attendanceRate"),
    "faculty_id": ("faculty_id", "facultyId"),
    "department_id": ("department_id", "departmentId"),
    "enrolled_courses": ("enrolled_courses", "enrolledCourses"),
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
}


def normalize_student_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Resolve legacy field names to their canonical names.

    Args:
        data: Raw mapping, possibly using legacy names (e.g. 'course')

    Returns:
        New mapping keyed by canonical names only
    """
    normalized = dict(data)
    for canonical, aliases in LEGACY_FIELD_ALIASES.items():
        value = None
        for alias in aliases:
            if normalized.get(alias) is not None:
                value = normalized[alias]
                break
        for alias in aliases:
            normalized.pop(alias, None)
        if value is not None:
            normalized[canonical] = value
    return normalized


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _LegacyAwareModel(BaseModel):
    """Accepts legacy field spellings on input."""

    @model_validator(mode="before")
    @classmethod
    def _resolve_legacy_names(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return normalize_student_payload(data)
        return data


class Intervention(BaseModel):
    """A support action logged against a student."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    type: InterventionType
    notes: str = ""
    status: InterventionStatus = InterventionStatus.PENDING
    date: datetime = Field(default_factory=utcnow)


class StudentRecord(_LegacyAwareModel):
    """A student's academic and financial standing."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    student_number: str = ""
    registration_number: Optional[str] = None
    program: str = ""
    year_of_study: int = 1
    semester_of_study: Term = Term.FIRST
    gpa: float = 0.0
    attendance: float = 0.0
    balance: float = 0.0
    faculty_id: Optional[str] = None
    department_id: Optional[str] = None
    enrolled_courses: List[str] = Field(default_factory=list)
    interventions: List[Intervention] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StudentCreate(_LegacyAwareModel):
    """Request body for creating a student."""
    student_number: str
    program: Optional[str] = None
    year_of_study: int = 1
    semester_of_study: Term = Term.FIRST
    gpa: float = 0.0
    attendance: float = 0.0
    balance: float = 0.0
    faculty_id: Optional[str] = None
    department_id: Optional[str] = None
    enrolled_courses: List[str] = Field(default_factory=list)


class StudentUpdate(_LegacyAwareModel):
    """Partial update: only fields that are set are applied."""
    program: Optional[str] = None
    year_of_study: Optional[int] = None
    semester_of_study: Optional[Term] = None
    gpa: Optional[float] = None
    attendance: Optional[float] = None
    balance: Optional[float] = None
    faculty_id: Optional[str] = None
    department_id: Optional[str] = None
    enrolled_courses: Optional[List[str]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class InterventionCreate(BaseModel):
    """Request body for logging an intervention."""
    type: InterventionType
    notes: str = ""
    status: InterventionStatus = InterventionStatus.PENDING


class Actor(BaseModel):
    """The authenticated caller and its scope assignments."""
    role: Role
    faculty_id: Optional[str] = None
    department_id: Optional[str] = None
    assigned_students: List[str] = Field(default_factory=list)
    assigned_courses: List[str] = Field(default_factory=list)


class RiskThresholds(BaseModel):
    """Per-request classification cutoffs. Never stored with records."""
    model_config = ConfigDict(frozen=True)

    critical_gpa: float = Field(default_factory=lambda: config.RISK_THRESHOLDS.get('critical_gpa', 2.0))
    warning_attendance: float = Field(default_factory=lambda: config.RISK_THRESHOLDS.get('warning_attendance', 75.0))
    financial_limit: float = Field(default_factory=lambda: config.RISK_THRESHOLDS.get('financial_limit', 1000000.0))


class ChangeEvent(BaseModel):
    """An immutable fact describing one logical mutation."""
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    records: List[StudentRecord] = Field(default_factory=list)
    student_numbers: List[str] = Field(default_factory=list)
    summary: Optional[Dict[str, int]] = None
    sequence: int = 0
    occurred_at: datetime = Field(default_factory=utcnow)
    # State before the change, for per-subscriber scope checks; never serialized
    previous: List[StudentRecord] = Field(default_factory=list, exclude=True)


class RowError(BaseModel):
    """Diagnostic for one rejected import row."""
    row: int
    student_number: Optional[str] = None
    field: Optional[str] = None
    message: str


class ImportSummary(BaseModel):
    """Response from the bulk import endpoints."""
    total_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[RowError] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class PaginatedStudents(BaseModel):
    records: List[StudentRecord]
    pagination: Pagination


class ClassifiedStudent(StudentRecord):
    """A student record annotated with its full risk label set."""
    risk_labels: List[RiskLabel] = Field(default_factory=list)


class ClassificationResponse(BaseModel):
    """Full label partition of the caller's scoped record set."""
    thresholds: RiskThresholds
    summary: Dict[str, int]
    students: Dict[str, List[ClassifiedStudent]]


class AnalyticsSummary(BaseModel):
    """Aggregate metrics only; carries no individual identities."""
    scope: str
    total_students: int
    average_gpa: float
    average_attendance: float
    total_balance: float
    label_counts: Dict[str, int]
