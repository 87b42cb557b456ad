"""Derived flat-file export of the full record set."""

import csv
import logging
import os
import tempfile
import threading
from io import StringIO
from typing import Callable, Iterable

from student_tracker.models import StudentRecord

logger = logging.getLogger(__name__)

# Fixed column order. Header names are also accepted import synonyms,
# so an export can be re-imported unchanged.
EXPORT_HEADERS = [
    'Student Number',
    'Program',
    'Year of Study',
    'Semester of Study',
    'GPA',
    'Attendance',
    'Balance',
]

# Excel needs the BOM to detect UTF-8
BOM = '\ufeff'


def format_number(value: float) -> str:
    """Integral floats without a trailing '.0', others at full precision."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def export_row(record: StudentRecord) -> list:
    return [
        record.student_number,
        record.program,
        str(record.year_of_study),
        record.semester_of_study.value,
        format_number(record.gpa),
        format_number(record.attendance),
        format_number(record.balance),
    ]


def render_export(records: Iterable[StudentRecord]) -> str:
    """
    Render records as CSV text.

    Values containing delimiters, quotes or newlines are quoted.
    """
    output = StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_MINIMAL, lineterminator='\n')
    writer.writerow(EXPORT_HEADERS)
    for record in records:
        writer.writerow(export_row(record))
    return BOM + output.getvalue()


class ExportWriter:
    """Writes the export file; regenerated synchronously after every mutation."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def regenerate(self, load_records: Callable[[], Iterable[StudentRecord]]) -> int:
        """
        Rewrite the export file atomically.

        Args:
            load_records: Returns the current record set; called under the
                writer lock so the last writer always writes the newest state

        Returns:
            Number of records written
        """
        directory = os.path.dirname(os.path.abspath(self.path))
        with self._lock:
            records = list(load_records())
            content = render_export(records)
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
                    f.write(content)
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        logger.info("CSV export updated: %s (%d students)", self.path, len(records))
        return len(records)

    def read(self) -> str:
        with open(self.path, 'r', encoding='utf-8') as f:
            return f.read()
