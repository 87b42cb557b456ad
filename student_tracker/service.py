"""Student operations: authorize, apply, then propagate.

Every mutating operation regenerates the export and publishes exactly one
change event. Lookups of a single record never reveal whether a record
outside the caller's scope exists.
"""

import logging
import math
from typing import List, Optional, Union

from student_tracker import config
from student_tracker.errors import AuthorizationDenied, NotFound, ValidationFailed
from student_tracker.export import ExportWriter, render_export
from student_tracker.models import (
    Actor,
    AnalyticsSummary,
    ChangeEvent,
    ClassificationResponse,
    ClassifiedStudent,
    EventKind,
    ImportSummary,
    Intervention,
    InterventionCreate,
    PaginatedStudents,
    Pagination,
    RiskThresholds,
    StudentCreate,
    StudentRecord,
    StudentUpdate,
)
from student_tracker.notifier import ChangeNotifier
from student_tracker.parsers import load_table
from student_tracker.reconciler import BulkReconciler
from student_tracker.risk import PARTITION_KEYS, aggregate_metrics, ordered_labels, partition
from student_tracker.scope import (
    EnrollmentDirectory,
    ScopePredicate,
    StoreEnrollmentDirectory,
    ensure_can_write,
    ensure_individual_access,
    resolve_aggregate_scope,
    resolve_scope,
)
from student_tracker.store import RecordStore

logger = logging.getLogger(__name__)

OUT_OF_SCOPE_MESSAGE = "Access denied. This student is not within your assigned scope."


class StudentService:
    """Entry point for every student operation, single-record or bulk."""

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
        self.enrollments = enrollments or StoreEnrollmentDirectory(store)
        self.reconciler = BulkReconciler(store, notifier, exporter, self.enrollments)

    # Scope helpers

    def scope_for(self, actor: Actor) -> ScopePredicate:
        return resolve_scope(actor, self.enrollments)

    def scope_before(self, actor: Actor, previous: List[StudentRecord]) -> ScopePredicate:
        """Scope the actor had over records in their state before a change."""
        return resolve_scope(actor, self.enrollments.as_of(previous))

    def _find_in_scope(self, actor: Actor, student_number: str) -> StudentRecord:
        predicate = self.scope_for(actor)
        record = self.store.get(student_number)
        if predicate.is_unrestricted:
            if record is None:
                raise NotFound("Student not found")
            return record
        if record is None or not predicate.matches(record):
            raise AuthorizationDenied(OUT_OF_SCOPE_MESSAGE)
        return record

    def _propagate(self, event: ChangeEvent) -> ChangeEvent:
        try:
            self.exporter.regenerate(self.store.all)
        except OSError as e:
            logger.error("Failed to update CSV export after %s: %s", event.kind.value, e)
        return self.notifier.publish(event)

    # Reads

    def list_students(
        self,
        actor: Actor,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Union[List[StudentRecord], PaginatedStudents]:
        """
        Scoped student list, newest first.

        Without page/limit the full list is returned as a bare list; with
        either one a paginated envelope is returned.
        """
        ensure_individual_access(actor)
        predicate = self.scope_for(actor)

        if page is None and limit is None:
            return self.store.query(predicate)

        page = max(1, page or 1)
        limit = max(1, min(config.MAX_PAGE_LIMIT, limit or config.DEFAULT_PAGE_LIMIT))
        records, total = self.store.page(predicate, page, limit)
        total_pages = math.ceil(total / limit)
        return PaginatedStudents(
            records=records,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=total_pages,
                has_next_page=page < total_pages,
                has_prev_page=page > 1,
            ),
        )

    def get_student(self, actor: Actor, student_number: str) -> StudentRecord:
        ensure_individual_access(actor)
        return self._find_in_scope(actor, student_number)

    # Single-record mutations

    def create_student(self, actor: Actor, payload: StudentCreate) -> StudentRecord:
        ensure_can_write(actor, "create")
        if not (payload.program or "").strip():
            raise ValidationFailed("Program is required", field="program")

        record = self.store.create(StudentRecord(**payload.model_dump()))
        self._propagate(ChangeEvent(
            kind=EventKind.RECORD_CREATED,
            records=[record],
            student_numbers=[record.student_number],
        ))
        logger.info("Student %s created", record.student_number)
        return record

    def update_student(self, actor: Actor, student_number: str, payload: StudentUpdate) -> StudentRecord:
        ensure_can_write(actor, "update")
        previous = self._find_in_scope(actor, student_number)

        record, changed = self.store.update(student_number, payload.changes())
        self._propagate(ChangeEvent(
            kind=EventKind.RECORD_UPDATED,
            records=[record],
            student_numbers=[record.student_number],
            previous=[previous],
        ))
        logger.info("Student %s updated (changed=%s)", student_number, changed)
        return record

    def delete_student(self, actor: Actor, student_number: str) -> StudentRecord:
        ensure_can_write(actor, "delete")
        self._find_in_scope(actor, student_number)

        record = self.store.delete(student_number)
        self._propagate(ChangeEvent(
            kind=EventKind.RECORD_DELETED,
            student_numbers=[record.student_number],
            previous=[record],
        ))
        logger.info("Student %s deleted", student_number)
        return record

    def log_intervention(self, actor: Actor, student_number: str, payload: InterventionCreate) -> StudentRecord:
        ensure_can_write(actor, "intervene")
        self._find_in_scope(actor, student_number)

        intervention = Intervention(**payload.model_dump())
        record = self.store.append_intervention(student_number, intervention)
        self._propagate(ChangeEvent(
            kind=EventKind.RECORD_UPDATED,
            records=[record],
            student_numbers=[record.student_number],
        ))
        logger.info("Intervention '%s' logged for student %s", intervention.type.value, student_number)
        return record

    # Classification and aggregates

    def classify(self, actor: Actor, thresholds: RiskThresholds) -> ClassificationResponse:
        """Full label partition of the caller's scoped records."""
        records = self.store.query(self.scope_for(actor))
        result = partition(records, thresholds)

        students = {}
        for label, key in PARTITION_KEYS.items():
            students[key] = [
                ClassifiedStudent(
                    **record.model_dump(),
                    risk_labels=ordered_labels(result.labels_by_student[record.id]),
                )
                for record in result.groups[label]
            ]
        return ClassificationResponse(
            thresholds=thresholds,
            summary=result.counts(),
            students=students,
        )

    def analytics(self, actor: Actor, thresholds: RiskThresholds) -> AnalyticsSummary:
        """Aggregate metrics over the caller's aggregate scope."""
        predicate = resolve_aggregate_scope(actor, self.enrollments)
        records = self.store.query(predicate)
        metrics = aggregate_metrics(records)
        counts = partition(records, thresholds).counts()
        counts.pop("total_students")
        return AnalyticsSummary(
            scope="university" if predicate.is_unrestricted else "scoped",
            label_counts=counts,
            **metrics,
        )

    # Bulk import and export

    def import_content(self, actor: Actor, content: Union[str, bytes], filename: Optional[str] = None) -> ImportSummary:
        """Import CSV text or an uploaded CSV/Excel file."""
        ensure_can_write(actor, "import")
        df = load_table(content, filename)
        return self.reconciler.reconcile_table(df, actor)

    def import_export_file(self, actor: Actor) -> ImportSummary:
        """Re-import the server's own export file."""
        ensure_can_write(actor, "import")
        if not self.exporter.exists():
            raise NotFound("Server CSV file not found. Please upload a CSV file first.")
        return self.import_content(actor, self.exporter.read())

    def export_csv(self, actor: Actor) -> str:
        """
        CSV export for the caller.

        Unrestricted callers get the maintained export file; everyone else
        gets an export rendered from their scoped records only.
        """
        ensure_individual_access(actor)
        predicate = self.scope_for(actor)
        if predicate.is_unrestricted:
            if not self.exporter.exists():
                self.exporter.regenerate(self.store.all)
            return self.exporter.read()
        return render_export(self.store.query(predicate))
