"""Unit tests for role-scoped access."""

import pytest

from student_tracker.errors import AuthorizationDenied
from student_tracker.models import Actor, Role
from student_tracker.scope import (
    InMemoryEnrollmentDirectory,
    ScopePredicate,
    StoreEnrollmentDirectory,
    ensure_can_write,
    ensure_individual_access,
    resolve_aggregate_scope,
    resolve_scope,
)
from tests.factories import make_record


@pytest.fixture
def populated_store(store):
    store.create(make_record(student_number='S1', faculty_id='F1', department_id='D1', enrolled_courses=['C1']))
    store.create(make_record(student_number='S2', faculty_id='F1', department_id='D2', enrolled_courses=['C2']))
    store.create(make_record(student_number='S3', faculty_id='F2', department_id='D3'))
    return store


def keys(records):
    return sorted(r.student_number for r in records)


def test_every_role_resolves():
    """Test each role maps to a predicate."""
    for role in Role:
        assert isinstance(resolve_scope(Actor(role=role)), ScopePredicate)


@pytest.mark.parametrize('role', [Role.VC, Role.DVC_ACADEMIC, Role.IT_ADMIN])
def test_denied_roles_match_nothing(populated_store, role):
    """Test executive and IT roles see no individual records."""
    predicate = resolve_scope(Actor(role=role))
    assert predicate.matches_nothing
    assert populated_store.query(predicate) == []


def test_unauthenticated_matches_nothing(populated_store):
    """Test a missing actor sees nothing."""
    assert populated_store.query(resolve_scope(None)) == []


def test_registry_is_unrestricted(populated_store):
    """Test registry sees every record."""
    predicate = resolve_scope(Actor(role=Role.REGISTRY))
    assert predicate.is_unrestricted
    assert keys(populated_store.query(predicate)) == ['S1', 'S2', 'S3']


def test_dean_sees_own_faculty(populated_store):
    """Test dean scope by faculty."""
    predicate = resolve_scope(Actor(role=Role.DEAN, faculty_id='F1'))
    assert keys(populated_store.query(predicate)) == ['S1', 'S2']


def test_hod_sees_own_department(populated_store):
    """Test head of department scope by department."""
    predicate = resolve_scope(Actor(role=Role.HOD, department_id='D2'))
    assert keys(populated_store.query(predicate)) == ['S2']


def test_advisor_sees_assigned_students(populated_store):
    """Test advisor scope by assignment list."""
    predicate = resolve_scope(Actor(role=Role.ADVISOR, assigned_students=['S3', 'S9']))
    assert keys(populated_store.query(predicate)) == ['S3']


def test_lecturer_sees_enrolled_students(populated_store):
    """Test lecturer scope through course enrollments."""
    enrollments = InMemoryEnrollmentDirectory({'C7': ['S2', 'S3']})
    predicate = resolve_scope(Actor(role=Role.LECTURER, assigned_courses=['C7']), enrollments)
    assert keys(populated_store.query(predicate)) == ['S2', 'S3']


def test_lecturer_with_store_enrollments(populated_store):
    """Test enrollments read from the records' course lists."""
    enrollments = StoreEnrollmentDirectory(populated_store)
    predicate = resolve_scope(Actor(role=Role.LECTURER, assigned_courses=['C1']), enrollments)
    assert keys(populated_store.query(predicate)) == ['S1']


@pytest.mark.parametrize('actor', [
    Actor(role=Role.DEAN),
    Actor(role=Role.HOD),
    Actor(role=Role.ADVISOR),
    Actor(role=Role.LECTURER),
    Actor(role=Role.LECTURER, assigned_courses=['C404']),
])
def test_missing_assignments_match_nothing(populated_store, actor):
    """Test scoped roles without assignment data see nothing."""
    assert populated_store.query(resolve_scope(actor, StoreEnrollmentDirectory(populated_store))) == []


def test_aggregate_scope():
    """Test aggregate access for executive and IT roles."""
    assert resolve_aggregate_scope(Actor(role=Role.VC)).is_unrestricted
    assert resolve_aggregate_scope(Actor(role=Role.DVC_ACADEMIC)).is_unrestricted
    assert resolve_aggregate_scope(Actor(role=Role.DEAN, faculty_id='F1')).constraints == {
        'faculty_id': frozenset({'F1'})
    }
    with pytest.raises(AuthorizationDenied):
        resolve_aggregate_scope(Actor(role=Role.IT_ADMIN))


def test_individual_access():
    """Test individual-record access checks."""
    ensure_individual_access(Actor(role=Role.ADVISOR))
    with pytest.raises(AuthorizationDenied):
        ensure_individual_access(Actor(role=Role.VC))


def test_write_permissions():
    """Test write rules per role."""
    ensure_can_write(Actor(role=Role.REGISTRY), 'create')
    ensure_can_write(Actor(role=Role.REGISTRY), 'import')
    ensure_can_write(Actor(role=Role.ADVISOR), 'update')

    with pytest.raises(AuthorizationDenied):
        ensure_can_write(Actor(role=Role.ADVISOR), 'create')
    with pytest.raises(AuthorizationDenied):
        ensure_can_write(Actor(role=Role.DEAN), 'update')
    with pytest.raises(AuthorizationDenied):
        ensure_can_write(Actor(role=Role.HOD), 'import')
