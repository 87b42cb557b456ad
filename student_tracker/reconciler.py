"""Idempotent bulk import of tabular student data.

Rows are processed sequentially, in input order, so later rows see the
writes of earlier rows in the same batch. Each row is created, updated or
skipped; a failing row is recorded and never aborts the batch. A batch
regenerates the export once and publishes a single ``batch-imported`` event.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from student_tracker.errors import AuthorizationDenied, Conflict, StudentTrackerError, ValidationFailed
from student_tracker.export import ExportWriter
from student_tracker.models import (
    Actor,
    ChangeEvent,
    EventKind,
    ImportSummary,
    RowError,
    StudentRecord,
    Term,
)
from student_tracker.notifier import ChangeNotifier
from student_tracker.parsers import ParsedRow, map_columns, parse_row, table_rows
from student_tracker.scope import EnrollmentDirectory, ScopePredicate, ensure_can_write, resolve_scope
from student_tracker.store import RecordStore

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"

# Unparseable cells that reject a create, in reporting order.
# Unrecognized semester or balance cells fall back to the defaults.
_CREATE_FIELD_ORDER = ("year_of_study", "gpa", "attendance")

FIELD_LABELS = {
    "student_number": "Student Number",
    "program": "Course",
    "year_of_study": "Year of Study",
    "semester_of_study": "Semester of Study",
    "gpa": "GPA",
    "attendance": "Attendance",
    "balance": "Balance",
}


class BulkReconciler:
    """Creates, updates or skips each imported row against the record store."""

    def __init__(
        self,
        store: RecordStore,
        notifier: ChangeNotifier,
        exporter: ExportWriter,
        enrollments: Optional[EnrollmentDirectory] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.exporter = exporter
        self.enrollments = enrollments

    def reconcile_table(self, df: pd.DataFrame, actor: Actor) -> ImportSummary:
        """Reconcile a loaded import table (see ``parsers.load_table``)."""
        return self.reconcile(table_rows(df), actor, column_map=map_columns(list(df.columns)))

    def reconcile(
        self,
        raw_rows: Iterable[Mapping[str, Any]],
        actor: Actor,
        column_map: Optional[Dict[str, Any]] = None,
        first_row_number: int = 2,
    ) -> ImportSummary:
        """
        Apply a batch of raw rows.

        Args:
            raw_rows: Rows keyed by header label, in file order
            actor: Caller; must hold import permission
            column_map: Logical field -> header label; derived from the
                first row's keys when omitted
            first_row_number: Line number of the first data row (header is 1)

        Returns:
            ImportSummary with counts and per-row diagnostics
        """
        ensure_can_write(actor, "import")
        predicate = resolve_scope(actor, self.enrollments)

        rows = list(raw_rows)
        if column_map is None:
            column_map = map_columns(list(rows[0].keys())) if rows else {}

        summary = ImportSummary(total_rows=len(rows))
        affected: Dict[str, StudentRecord] = {}

        for index, raw_row in enumerate(rows):
            row_number = first_row_number + index
            parsed = None
            try:
                parsed = parse_row(raw_row, column_map)
                if not parsed.student_number:
                    self._skip(summary, row_number, None, "student_number",
                               "Missing Student Number - row skipped")
                    continue

                outcome, record = self._apply_row(parsed, predicate)
                affected[record.student_number] = record
                if outcome == CREATED:
                    summary.created += 1
                else:
                    summary.updated += 1
            except StudentTrackerError as e:
                key = parsed.student_number if parsed else None
                self._skip(summary, row_number, key, e.field, e.message)
            except Exception as e:
                key = parsed.student_number if parsed else None
                logger.exception("Error processing row %d", row_number)
                self._skip(summary, row_number, key, None, f"Unexpected error: {e}")

        self._finish(summary, affected)
        return summary

    def _apply_row(self, parsed: ParsedRow, predicate: ScopePredicate) -> Tuple[str, StudentRecord]:
        existing = self.store.get(parsed.student_number)
        if existing is not None:
            return UPDATED, self._update(existing, parsed, predicate)

        try:
            return CREATED, self._create(parsed)
        except Conflict:
            # Another writer created the key since the lookup
            existing = self.store.get(parsed.student_number)
            if existing is None:
                raise
            return UPDATED, self._update(existing, parsed, predicate)

    def _update(self, existing: StudentRecord, parsed: ParsedRow, predicate: ScopePredicate) -> StudentRecord:
        if not predicate.matches(existing):
            raise AuthorizationDenied("Access denied. Student is not within your scope.")
        # Partial update: only present and parseable cells overwrite
        record, _ = self.store.update(existing.student_number, parsed.values)
        return record

    def _create(self, parsed: ParsedRow) -> StudentRecord:
        values = parsed.values
        if not values.get("program"):
            raise ValidationFailed("Course is required", field="program")
        for field_name in _CREATE_FIELD_ORDER:
            if field_name in parsed.invalid:
                raise ValidationFailed(
                    f"Invalid {FIELD_LABELS[field_name]}: '{parsed.invalid[field_name]}'",
                    field=field_name,
                )

        record = StudentRecord(
            student_number=parsed.student_number,
            program=values["program"],
            year_of_study=values.get("year_of_study", 1),
            semester_of_study=values.get("semester_of_study", Term.FIRST),
            gpa=values.get("gpa", 0.0),
            attendance=values.get("attendance", 0.0),
            balance=values.get("balance", 0.0),
        )
        return self.store.create(record)

    @staticmethod
    def _skip(summary: ImportSummary, row_number: int, student_number: Optional[str],
              field: Optional[str], message: str) -> None:
        summary.skipped += 1
        if student_number:
            text = f"Row {row_number} (Student Number: {student_number}): {message}"
        else:
            text = f"Row {row_number}: {message}"
        summary.errors.append(RowError(
            row=row_number,
            student_number=student_number,
            field=field,
            message=text,
        ))
        logger.warning(text)

    def _finish(self, summary: ImportSummary, affected: Dict[str, StudentRecord]) -> None:
        try:
            self.exporter.regenerate(self.store.all)
        except OSError as e:
            logger.error("Failed to regenerate CSV export after import: %s", e)

        records: List[StudentRecord] = list(affected.values())
        self.notifier.publish(ChangeEvent(
            kind=EventKind.BATCH_IMPORTED,
            records=records,
            student_numbers=[r.student_number for r in records],
            summary={
                "total_rows": summary.total_rows,
                "created": summary.created,
                "updated": summary.updated,
                "skipped": summary.skipped,
            },
        ))
        logger.info(
            "CSV import summary: %d rows, %d created, %d updated, %d skipped",
            summary.total_rows, summary.created, summary.updated, summary.skipped,
        )
