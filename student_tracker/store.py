"""Authoritative in-memory student record store.

Records are keyed by business key (``student_number``). All writes take one
lock, so uniqueness checks and inserts are atomic: of two concurrent creates
for the same key exactly one succeeds and the other gets ``Conflict``.
Returned records are copies; callers never hold references into the store.
"""

import logging
import math
import threading
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from student_tracker.errors import Conflict, NotFound, ValidationFailed
from student_tracker.models import Intervention, StudentRecord, Term, utcnow

logger = logging.getLogger(__name__)

GPA_RANGE = (0.0, 5.0)
ATTENDANCE_RANGE = (0.0, 100.0)

IMMUTABLE_FIELDS = ("id", "student_number", "registration_number", "created_at")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if not isinstance(value, (int, float)):
        return False
    return not (math.isnan(value) or math.isinf(value))


def validate_fields(values: Dict[str, Any], creating: bool = False) -> None:
    """
    Enforce structural field constraints.

    Args:
        values: Field values to check (canonical names)
        creating: When True, required fields must be present

    Raises:
        ValidationFailed: naming the first violated field
    """
    if creating or "program" in values:
        program = values.get("program")
        if program is None or not str(program).strip():
            raise ValidationFailed("Program is required", field="program")

    if creating or "year_of_study" in values:
        year = values.get("year_of_study")
        if not _is_number(year) or int(year) != year or year < 1:
            raise ValidationFailed("Invalid Year of Study (must be >= 1)", field="year_of_study")

    if "semester_of_study" in values:
        try:
            Term(values["semester_of_study"])
        except ValueError:
            raise ValidationFailed("Invalid Semester of Study (must be 1 or 2)", field="semester_of_study")

    if creating or "gpa" in values:
        gpa = values.get("gpa")
        if not _is_number(gpa) or not GPA_RANGE[0] <= gpa <= GPA_RANGE[1]:
            raise ValidationFailed("Invalid GPA (must be between 0 and 5)", field="gpa")

    if creating or "attendance" in values:
        attendance = values.get("attendance")
        if not _is_number(attendance) or not ATTENDANCE_RANGE[0] <= attendance <= ATTENDANCE_RANGE[1]:
            raise ValidationFailed("Invalid Attendance (must be between 0 and 100)", field="attendance")

    if "balance" in values:
        balance = values.get("balance")
        if not _is_number(balance) or balance < 0:
            raise ValidationFailed("Invalid Balance (must be >= 0)", field="balance")


class RecordStore:
    """Thread-safe collection of student records keyed by student number."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, StudentRecord] = {}
        self._registration_index: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._records)

    def create(self, record: StudentRecord) -> StudentRecord:
        """Insert a new record. Raises Conflict on a duplicate business key."""
        student_number = (record.student_number or "").strip()
        if not student_number:
            raise ValidationFailed("Student number is required", field="student_number")

        validate_fields(record.model_dump(), creating=True)

        # Legacy unique index requires a registration number on every record
        registration_number = record.registration_number or student_number
        stored = record.model_copy(update={
            "student_number": student_number,
            "registration_number": registration_number,
            "program": record.program.strip(),
        })

        with self._lock:
            if student_number in self._records:
                raise Conflict("Student number already exists.", field="student_number")
            if registration_number in self._registration_index:
                raise Conflict("Registration number already exists.", field="registration_number")
            self._records[student_number] = stored
            self._registration_index[registration_number] = student_number

        logger.debug("Created student %s", student_number)
        return stored.model_copy(deep=True)

    def get(self, student_number: str) -> Optional[StudentRecord]:
        with self._lock:
            record = self._records.get(student_number)
            return record.model_copy(deep=True) if record else None

    def exists(self, student_number: str) -> bool:
        with self._lock:
            return student_number in self._records

    def update(self, student_number: str, changes: Dict[str, Any]) -> Tuple[StudentRecord, bool]:
        """
        Apply a partial update.

        Args:
            student_number: Business key of the target record
            changes: Canonical field names to new values; absent fields untouched

        Returns:
            Tuple of (updated record copy, whether any value changed)
        """
        for name in IMMUTABLE_FIELDS:
            if name in changes:
                raise ValidationFailed(f"Field '{name}' cannot be changed", field=name)
        validate_fields(changes)

        with self._lock:
            existing = self._records.get(student_number)
            if existing is None:
                raise NotFound("Student not found")

            data = existing.model_dump()
            merged = dict(data)
            merged.update(changes)
            if "program" in changes:
                merged["program"] = str(changes["program"]).strip()
            try:
                candidate = StudentRecord.model_validate(merged)
            except ValidationError as e:
                raise ValidationFailed(f"Invalid field value: {e.errors()[0]['msg']}")

            changed = candidate.model_dump() != data
            if changed:
                candidate = candidate.model_copy(update={"updated_at": utcnow()})
                self._records[student_number] = candidate
            return candidate.model_copy(deep=True), changed

    def append_intervention(self, student_number: str, intervention: Intervention) -> StudentRecord:
        with self._lock:
            existing = self._records.get(student_number)
            if existing is None:
                raise NotFound("Student not found")
            updated = existing.model_copy(update={
                "interventions": existing.interventions + [intervention],
                "updated_at": utcnow(),
            })
            self._records[student_number] = updated
            return updated.model_copy(deep=True)

    def delete(self, student_number: str) -> StudentRecord:
        with self._lock:
            record = self._records.pop(student_number, None)
            if record is None:
                raise NotFound("Student not found")
            if record.registration_number:
                self._registration_index.pop(record.registration_number, None)
        logger.debug("Deleted student %s", student_number)
        return record

    def all(self) -> List[StudentRecord]:
        """All records, newest first."""
        with self._lock:
            records = list(self._records.values())
        records.reverse()
        return [r.model_copy(deep=True) for r in records]

    def query(self, predicate) -> List[StudentRecord]:
        """Records matching a scope predicate, newest first."""
        if predicate.matches_nothing:
            return []
        return [r for r in self.all() if predicate.matches(r)]

    def page(self, predicate, page: int, limit: int) -> Tuple[List[StudentRecord], int]:
        """One page of matching records plus the total match count."""
        matching = self.query(predicate)
        start = (page - 1) * limit
        return matching[start:start + limit], len(matching)
