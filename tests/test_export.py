"""Unit tests for the CSV export."""

import os
import threading
import time

from student_tracker.export import EXPORT_HEADERS, ExportWriter, format_number, render_export
from student_tracker.store import RecordStore
from tests.factories import make_record


def test_format_number():
    """Test integral values drop the decimal part."""
    assert format_number(3.0) == '3'
    assert format_number(3.25) == '3.25'
    assert format_number(1500000.0) == '1500000'


def test_render_export():
    """Test header, BOM and column order."""
    content = render_export([make_record(gpa=3.0, attendance=87.5, balance=1200.0)])
    lines = content.split('\n')

    assert content.startswith('\ufeff')
    assert lines[0] == '\ufeff' + ','.join(EXPORT_HEADERS)
    assert lines[1] == 'S001,BSc Computer Science,2,1,3,87.5,1200'


def test_render_export_quotes_special_values():
    """Test minimal quoting of commas, quotes and newlines."""
    content = render_export([make_record(program='Arts, "Modern"\nStudies')])
    assert '"Arts, ""Modern""\nStudies"' in content


def test_writer_regenerate(tmp_path):
    """Test the export file is written and replaced."""
    path = tmp_path / 'out' / 'students.csv'
    writer = ExportWriter(str(path))
    assert not writer.exists()

    assert writer.regenerate(lambda: [make_record(student_number='S1'), make_record(student_number='S2')]) == 2
    assert writer.exists()
    assert writer.read().count('\n') == 3

    assert writer.regenerate(list) == 0
    assert writer.read() == '\ufeff' + ','.join(EXPORT_HEADERS) + '\n'
    assert os.listdir(path.parent) == ['students.csv']


def test_concurrent_regenerate_writes_newest_state(tmp_path):
    """Test a slow earlier regeneration cannot overwrite a newer one."""
    store = RecordStore()
    store.create(make_record(student_number='A'))
    writer = ExportWriter(str(tmp_path / 'students.csv'))
    reading = threading.Event()

    def slow_snapshot():
        records = store.all()
        reading.set()
        time.sleep(0.2)
        return records

    first = threading.Thread(target=writer.regenerate, args=(slow_snapshot,))
    first.start()
    assert reading.wait(timeout=5)

    store.create(make_record(student_number='B'))
    writer.regenerate(store.all)
    first.join()

    rows = [line.split(',')[0] for line in writer.read().split('\n')[1:] if line]
    assert sorted(rows) == ['A', 'B']
