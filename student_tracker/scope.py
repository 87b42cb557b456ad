"""Role-scoped access: which student records an actor may read or write.

Every role maps to exactly one handler in ``_SCOPE_HANDLERS``. Handlers
return a declarative ``ScopePredicate`` that the record store evaluates; no
other module branches on roles for record visibility.

Missing assignment data always yields a predicate matching nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set

from student_tracker.errors import AuthorizationDenied
from student_tracker.models import Actor, Role, StudentRecord

logger = logging.getLogger(__name__)

MODE_ALL = "all"
MODE_NONE = "none"
MODE_FIELDS = "fields"


@dataclass(frozen=True)
class ScopePredicate:
    """
    Declarative record filter.

    In ``fields`` mode a record matches when any constrained field's value is
    in the allowed set for that field.
    """
    mode: str
    constraints: Dict[str, FrozenSet[str]] = field(default_factory=dict)

    @classmethod
    def unrestricted(cls) -> "ScopePredicate":
        return cls(MODE_ALL)

    @classmethod
    def nothing(cls) -> "ScopePredicate":
        return cls(MODE_NONE)

    @classmethod
    def field_in(cls, field_name: str, values: Iterable[Optional[str]]) -> "ScopePredicate":
        allowed = frozenset(v for v in values if v)
        if not allowed:
            return cls.nothing()
        return cls(MODE_FIELDS, {field_name: allowed})

    @property
    def is_unrestricted(self) -> bool:
        return self.mode == MODE_ALL

    @property
    def matches_nothing(self) -> bool:
        return self.mode == MODE_NONE

    def matches(self, record: StudentRecord) -> bool:
        if self.mode == MODE_ALL:
            return True
        if self.mode == MODE_NONE:
            return False
        for field_name, allowed in self.constraints.items():
            if getattr(record, field_name, None) in allowed:
                return True
        return False


class EnrollmentDirectory:
    """Resolves course ids to the business keys of enrolled students."""

    def students_for_courses(self, course_ids: Iterable[str]) -> Set[str]:
        raise NotImplementedError

    def as_of(self, records: Iterable[StudentRecord]) -> "EnrollmentDirectory":
        """Directory to use when judging the given earlier record states."""
        return self


class InMemoryEnrollmentDirectory(EnrollmentDirectory):
    """Enrollment mapping held in memory: course id -> student numbers."""

    def __init__(self, enrollments: Optional[Dict[str, Iterable[str]]] = None):
        self._enrollments: Dict[str, Set[str]] = {
            course: set(students) for course, students in (enrollments or {}).items()
        }

    def enroll(self, course_id: str, student_number: str) -> None:
        self._enrollments.setdefault(course_id, set()).add(student_number)

    def students_for_courses(self, course_ids: Iterable[str]) -> Set[str]:
        students: Set[str] = set()
        for course_id in course_ids:
            students |= self._enrollments.get(course_id, set())
        return students


class RecordEnrollmentDirectory(EnrollmentDirectory):
    """Reads enrollments from each record's ``enrolled_courses`` list."""

    def __init__(self, records: Iterable[StudentRecord] = ()):
        self._records = list(records)

    def records(self) -> Iterable[StudentRecord]:
        return self._records

    def as_of(self, records: Iterable[StudentRecord]) -> EnrollmentDirectory:
        return RecordEnrollmentDirectory(records)

    def students_for_courses(self, course_ids: Iterable[str]) -> Set[str]:
        wanted = set(course_ids)
        if not wanted:
            return set()
        return {
            record.student_number
            for record in self.records()
            if wanted.intersection(record.enrolled_courses)
        }


class StoreEnrollmentDirectory(RecordEnrollmentDirectory):
    """Enrollments of the records currently in a store."""

    def __init__(self, store):
        self._store = store

    def records(self) -> Iterable[StudentRecord]:
        return self._store.all()


def _deny(actor: Actor, enrollments: EnrollmentDirectory) -> ScopePredicate:
    return ScopePredicate.nothing()


def _unrestricted(actor: Actor, enrollments: EnrollmentDirectory) -> ScopePredicate:
    return ScopePredicate.unrestricted()


def _faculty_scope(actor: Actor, enrollments: EnrollmentDirectory) -> ScopePredicate:
    return ScopePredicate.field_in("faculty_id", [actor.faculty_id])


def _department_scope(actor: Actor, enrollments: EnrollmentDirectory) -> ScopePredicate:
    return ScopePredicate.field_in("department_id", [actor.department_id])


def _assigned_students_scope(actor: Actor, enrollments: EnrollmentDirectory) -> ScopePredicate:
    return ScopePredicate.field_in("student_number", actor.assigned_students)


def _course_enrollment_scope(actor: Actor, enrollments: EnrollmentDirectory) -> ScopePredicate:
    if not actor.assigned_courses:
        return ScopePredicate.nothing()
    return ScopePredicate.field_in(
        "student_number", enrollments.students_for_courses(actor.assigned_courses)
    )


_SCOPE_HANDLERS: Dict[Role, Callable[[Actor, EnrollmentDirectory], ScopePredicate]] = {
    Role.VC: _deny,
    Role.DVC_ACADEMIC: _deny,
    Role.DEAN: _faculty_scope,
    Role.HOD: _department_scope,
    Role.ADVISOR: _assigned_students_scope,
    Role.LECTURER: _course_enrollment_scope,
    Role.REGISTRY: _unrestricted,
    Role.IT_ADMIN: _deny,
}

# Roles restricted to aggregate figures; they never see individual records
AGGREGATE_ONLY_ROLES = frozenset({Role.VC, Role.DVC_ACADEMIC})
NO_ACADEMIC_ACCESS_ROLES = frozenset({Role.IT_ADMIN})

WRITE_PERMISSIONS: Dict[str, FrozenSet[Role]] = {
    "create": frozenset({Role.REGISTRY}),
    "delete": frozenset({Role.REGISTRY}),
    "import": frozenset({Role.REGISTRY}),
    "update": frozenset({Role.REGISTRY, Role.ADVISOR}),
    "intervene": frozenset({Role.REGISTRY, Role.ADVISOR}),
}


def resolve_scope(actor: Optional[Actor], enrollments: Optional[EnrollmentDirectory] = None) -> ScopePredicate:
    """
    Build the record filter for an actor.

    Args:
        actor: The caller; None means unauthenticated
        enrollments: Course enrollment lookup for course-scoped roles

    Returns:
        ScopePredicate restricting readable/writable records
    """
    if actor is None:
        return ScopePredicate.nothing()
    handler = _SCOPE_HANDLERS.get(actor.role, _deny)
    return handler(actor, enrollments or InMemoryEnrollmentDirectory())


def resolve_aggregate_scope(actor: Actor, enrollments: Optional[EnrollmentDirectory] = None) -> ScopePredicate:
    """Scope for aggregate-only queries (no identities are returned)."""
    if actor.role in NO_ACADEMIC_ACCESS_ROLES:
        raise AuthorizationDenied("Access denied. Your role has no access to academic data.")
    if actor.role in AGGREGATE_ONLY_ROLES:
        return ScopePredicate.unrestricted()
    return resolve_scope(actor, enrollments)


def can_view_individual_records(actor: Actor) -> bool:
    return actor.role not in AGGREGATE_ONLY_ROLES | NO_ACADEMIC_ACCESS_ROLES


def ensure_individual_access(actor: Actor) -> None:
    if not can_view_individual_records(actor):
        raise AuthorizationDenied(
            "Access denied. Your role does not have permission to view individual student data."
        )


def ensure_can_write(actor: Actor, action: str) -> None:
    """Raise AuthorizationDenied unless the actor's role may perform ``action``."""
    allowed = WRITE_PERMISSIONS.get(action, frozenset())
    if actor.role not in allowed:
        logger.info("Denied %s for role %s", action, actor.role.value)
        raise AuthorizationDenied(
            f"Access denied. Your role does not have permission to {action} student records."
        )