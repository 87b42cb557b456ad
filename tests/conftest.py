"""Shared fixtures for the test suite."""

import pytest

from student_tracker.export import ExportWriter
from student_tracker.models import Actor, Role
from student_tracker.notifier import ChangeNotifier
from student_tracker.reconciler import BulkReconciler
from student_tracker.service import StudentService
from student_tracker.store import RecordStore


@pytest.fixture
def store():
    return RecordStore()


@pytest.fixture
def notifier():
    return ChangeNotifier(queue_size=100)


@pytest.fixture
def exporter(tmp_path):
    return ExportWriter(str(tmp_path / 'exports' / 'students.csv'))


@pytest.fixture
def reconciler(store, notifier, exporter):
    return BulkReconciler(store, notifier, exporter)


@pytest.fixture
def service(store, notifier, exporter):
    return StudentService(store, notifier, exporter)


@pytest.fixture
def registry():
    return Actor(role=Role.REGISTRY)
