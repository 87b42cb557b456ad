"""Unit tests for student operations."""

import pytest

from student_tracker import config
from student_tracker.errors import AuthorizationDenied, Conflict, NotFound, ValidationFailed
from student_tracker.models import (
    Actor,
    EventKind,
    InterventionCreate,
    InterventionType,
    PaginatedStudents,
    RiskThresholds,
    Role,
    StudentCreate,
    StudentUpdate,
)
from tests.factories import make_record

ADVISOR = Actor(role=Role.ADVISOR, assigned_students=['S1'])


def test_create_publishes_once_and_exports(service, notifier, exporter, registry):
    """Test a create publishes one event and refreshes the export."""
    subscription = notifier.subscribe()
    record = service.create_student(registry, StudentCreate(student_number='S1', program='BSc'))

    events = subscription.drain()
    assert [e.kind for e in events] == [EventKind.RECORD_CREATED]
    assert events[0].records[0].student_number == 'S1'
    assert record.registration_number == 'S1'
    assert 'S1,BSc' in exporter.read()


def test_create_rules(service, registry):
    """Test create permissions and required fields."""
    with pytest.raises(AuthorizationDenied):
        service.create_student(ADVISOR, StudentCreate(student_number='S1', program='BSc'))
    with pytest.raises(ValidationFailed) as exc_info:
        service.create_student(registry, StudentCreate(student_number='S1'))
    assert exc_info.value.field == 'program'

    service.create_student(registry, StudentCreate(student_number='S1', course='BSc'))
    with pytest.raises(Conflict):
        service.create_student(registry, StudentCreate(student_number='S1', program='BSc'))


def test_out_of_scope_looks_like_denied(service, store):
    """Test scoped callers cannot tell hidden records from missing ones."""
    store.create(make_record(student_number='S1'))
    store.create(make_record(student_number='S2'))

    assert service.get_student(ADVISOR, 'S1').student_number == 'S1'
    with pytest.raises(AuthorizationDenied) as hidden:
        service.get_student(ADVISOR, 'S2')
    with pytest.raises(AuthorizationDenied) as missing:
        service.get_student(ADVISOR, 'S9')
    assert hidden.value.message == missing.value.message


def test_registry_gets_not_found(service, registry):
    """Test unrestricted callers see NotFound."""
    with pytest.raises(NotFound):
        service.get_student(registry, 'S9')


def test_advisor_updates_in_scope(service, store, notifier):
    """Test advisors can update their assigned students only."""
    store.create(make_record(student_number='S1'))
    store.create(make_record(student_number='S2'))
    subscription = notifier.subscribe()

    record = service.update_student(ADVISOR, 'S1', StudentUpdate(gpa=1.5))
    assert record.gpa == 1.5
    assert [e.kind for e in subscription.drain()] == [EventKind.RECORD_UPDATED]

    with pytest.raises(AuthorizationDenied):
        service.update_student(ADVISOR, 'S2', StudentUpdate(gpa=1.5))
    with pytest.raises(AuthorizationDenied):
        service.update_student(Actor(role=Role.DEAN, faculty_id='F1'), 'S1', StudentUpdate(gpa=1.0))


def test_delete(service, store, notifier, registry):
    """Test delete publishes the removed key."""
    store.create(make_record(student_number='S1'))
    subscription = notifier.subscribe()

    service.delete_student(registry, 'S1')

    event = subscription.drain()[0]
    assert event.kind == EventKind.RECORD_DELETED
    assert event.student_numbers == ['S1']
    assert not store.exists('S1')
    with pytest.raises(AuthorizationDenied):
        service.delete_student(ADVISOR, 'S1')


def test_log_intervention(service, store, notifier):
    """Test interventions are appended and announced as updates."""
    store.create(make_record(student_number='S1'))
    subscription = notifier.subscribe()

    record = service.log_intervention(
        ADVISOR, 'S1', InterventionCreate(type=InterventionType.COUNSELING, notes='Weekly check-in')
    )

    assert len(record.interventions) == 1
    assert record.interventions[0].status.value == 'Pending'
    assert [e.kind for e in subscription.drain()] == [EventKind.RECORD_UPDATED]


def test_list_students(service, store, registry):
    """Test bare and paginated listings."""
    for i in range(3):
        store.create(make_record(student_number=f'S{i}'))

    records = service.list_students(registry)
    assert [r.student_number for r in records] == ['S2', 'S1', 'S0']

    page = service.list_students(registry, page=2, limit=2)
    assert isinstance(page, PaginatedStudents)
    assert [r.student_number for r in page.records] == ['S0']
    assert page.pagination.total == 3
    assert page.pagination.total_pages == 2
    assert page.pagination.has_prev_page
    assert not page.pagination.has_next_page

    clamped = service.list_students(registry, limit=config.MAX_PAGE_LIMIT + 500)
    assert clamped.pagination.limit == config.MAX_PAGE_LIMIT

    with pytest.raises(AuthorizationDenied):
        service.list_students(Actor(role=Role.VC))


def test_classify_is_scoped(service, store):
    """Test classification covers only the caller's records."""
    store.create(make_record(student_number='S1', gpa=1.0, faculty_id='F1'))
    store.create(make_record(student_number='S2', gpa=1.0, faculty_id='F2'))

    response = service.classify(Actor(role=Role.DEAN, faculty_id='F1'), RiskThresholds())

    assert response.summary['total_students'] == 1
    assert response.summary['academic_risk'] == 1
    assert [s.student_number for s in response.students['academic_risk']] == ['S1']
    assert response.students['academic_risk'][0].risk_labels == ['Academic Risk']


def test_analytics(service, store):
    """Test aggregate access for executives and scoped roles."""
    store.create(make_record(student_number='S1', gpa=3.0, faculty_id='F1'))
    store.create(make_record(student_number='S2', gpa=1.0, faculty_id='F2'))

    overall = service.analytics(Actor(role=Role.VC), RiskThresholds())
    assert overall.scope == 'university'
    assert overall.total_students == 2
    assert overall.average_gpa == 2.0
    assert overall.label_counts['academic_risk'] == 1

    dean = service.analytics(Actor(role=Role.DEAN, faculty_id='F2'), RiskThresholds())
    assert dean.scope == 'scoped'
    assert dean.total_students == 1

    with pytest.raises(AuthorizationDenied):
        service.analytics(Actor(role=Role.IT_ADMIN), RiskThresholds())


def test_export_csv(service, store, exporter, registry):
    """Test export is generated on demand and scoped for other roles."""
    store.create(make_record(student_number='S1', faculty_id='F1'))
    store.create(make_record(student_number='S2', faculty_id='F2'))
    assert not exporter.exists()

    full = service.export_csv(registry)
    assert exporter.exists()
    assert 'S1,' in full and 'S2,' in full

    scoped = service.export_csv(Actor(role=Role.DEAN, faculty_id='F2'))
    assert 'S1,' not in scoped and 'S2,' in scoped


def test_import_export_file(service, registry):
    """Test re-import of the server export."""
    with pytest.raises(NotFound):
        service.import_export_file(registry)

    service.import_content(registry, 'Student Number,Program\nS1,BSc\nS2,BA')
    summary = service.import_export_file(registry)
    assert (summary.created, summary.updated, summary.skipped) == (0, 2, 0)
