"""
Client-side record cache kept in step with the server.

Local changes are applied optimistically and confirmed or marked failed once
the server answers. Pushed change events are merged by business key, so a
repeated or late event never duplicates a record.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import ValidationError

from student_tracker import config
from student_tracker.client import StudentApiClient
from student_tracker.errors import RETRYABLE_ERRORS, StudentTrackerError, ValidationFailed
from student_tracker.models import ChangeEvent, EventKind, StudentRecord, normalize_student_payload

logger = logging.getLogger(__name__)


class MutationState(str, Enum):
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    FAILED_LOCAL_ONLY = "failed_local_only"


@dataclass
class PendingMutation:
    """A local change and what the server made of it."""
    action: str
    student_number: str
    record: Optional[StudentRecord] = None
    state: MutationState = MutationState.OPTIMISTIC
    error: Optional[StudentTrackerError] = None
    id: str = field(default_factory=lambda: uuid4().hex)


def _local_record(data: Dict[str, Any]) -> StudentRecord:
    """Build the optimistic local record, reporting bad values like the server does."""
    try:
        return StudentRecord.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        loc = error.get('loc') or ()
        field_name = str(loc[0]) if loc else None
        raise ValidationFailed(f"Invalid field value: {error['msg']}", field=field_name)


class LocalCacheStore:
    """Last known record list, persisted as a JSON file."""

    def __init__(self, path: str = config.CLIENT_CACHE_PATH):
        self.path = path

    def load(self) -> List[StudentRecord]:
        """Cached records; empty when the file is missing or unreadable."""
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return [StudentRecord.model_validate(item) for item in data]
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.warning("Ignoring unreadable student cache %s: %s", self.path, e)
            return []

    def save(self, records: List[StudentRecord]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump([r.model_dump(mode='json') for r in records], f)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


class CacheSynchronizer:
    """
    One client's view of the student list.

    Args:
        client: API client used for fetches and writes
        cache: Optional persisted cache used when the server is unreachable
    """

    def __init__(self, client: StudentApiClient, cache: Optional[LocalCacheStore] = None):
        self.client = client
        self.cache = cache
        self.records: List[StudentRecord] = []
        self.mutations: List[PendingMutation] = []
        self.warnings: List[str] = []

    # Local list helpers

    def find(self, student_number: str) -> Optional[StudentRecord]:
        for record in self.records:
            if record.student_number == student_number:
                return record
        return None

    def _position(self, student_number: str, record_id: Optional[str] = None) -> Optional[int]:
        for i, record in enumerate(self.records):
            if record.student_number == student_number or (record_id and record.id == record_id):
                return i
        return None

    def _upsert(self, record: StudentRecord, replaces_id: Optional[str] = None) -> None:
        position = self._position(record.student_number, replaces_id or record.id)
        if position is None:
            self.records.insert(0, record)
        else:
            self.records[position] = record

    def _remove(self, student_number: str) -> Optional[StudentRecord]:
        position = self._position(student_number)
        if position is None:
            return None
        return self.records.pop(position)

    def _persist(self) -> None:
        if self.cache is None:
            return
        try:
            self.cache.save(self.records)
        except OSError as e:
            logger.warning("Failed to update student cache: %s", e)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    # Fetching

    def load(self) -> List[StudentRecord]:
        """
        Replace the local list with the server's.

        Connectivity failures fall back to the persisted cache (or an empty
        list) and are reported in ``warnings`` instead of raised.
        """
        try:
            records = self.client.list_students()
        except RETRYABLE_ERRORS as e:
            cached = self.cache.load() if self.cache else []
            if cached:
                self._warn(f"Server unavailable, showing {len(cached)} cached students: {e.message}")
            else:
                self._warn(f"Server unavailable and no cached students: {e.message}")
            self.records = cached
            return self.records

        self.records = records
        self._persist()
        return self.records

    def on_reconnect(self) -> List[StudentRecord]:
        """Events may have been missed while disconnected; refetch everything."""
        logger.info("Reconnected, refreshing student list")
        return self.load()

    # Optimistic mutations

    def _settle(self, mutation: PendingMutation, error: Optional[StudentTrackerError] = None) -> PendingMutation:
        if error is None:
            mutation.state = MutationState.CONFIRMED
        else:
            mutation.state = MutationState.FAILED_LOCAL_ONLY
            mutation.error = error
            self._warn(
                f"{mutation.action.capitalize()} of student {mutation.student_number} "
                f"was not saved on the server: {error.message}"
            )
        self._persist()
        return mutation

    def create(self, data: Dict[str, Any]) -> PendingMutation:
        """Show the new record at once, then confirm it with the server."""
        local = _local_record(data)
        self._upsert(local)
        mutation = PendingMutation("create", local.student_number, record=local)
        self.mutations.append(mutation)

        try:
            saved = self.client.create_student(data)
        except StudentTrackerError as e:
            return self._settle(mutation, e)
        self._upsert(saved, replaces_id=local.id)
        mutation.record = saved
        return self._settle(mutation)

    def update(self, student_number: str, changes: Dict[str, Any]) -> PendingMutation:
        changes = normalize_student_payload(changes)
        current = self.find(student_number)
        local = None
        if current is not None:
            local = _local_record({**current.model_dump(), **changes})
            self._upsert(local)
        mutation = PendingMutation("update", student_number, record=local)
        self.mutations.append(mutation)

        try:
            saved = self.client.update_student(student_number, changes)
        except StudentTrackerError as e:
            return self._settle(mutation, e)
        self._upsert(saved)
        mutation.record = saved
        return self._settle(mutation)

    def delete(self, student_number: str) -> PendingMutation:
        removed = self._remove(student_number)
        mutation = PendingMutation("delete", student_number, record=removed)
        self.mutations.append(mutation)

        try:
            self.client.delete_student(student_number)
        except StudentTrackerError as e:
            return self._settle(mutation, e)
        return self._settle(mutation)

    @property
    def pending(self) -> List[PendingMutation]:
        return [m for m in self.mutations if m.state == MutationState.OPTIMISTIC]

    @property
    def failed(self) -> List[PendingMutation]:
        return [m for m in self.mutations if m.state == MutationState.FAILED_LOCAL_ONLY]

    # Pushed events

    def apply_event(self, event: Union[ChangeEvent, Dict[str, Any]]) -> None:
        """
        Merge a pushed change event into the local list.

        Records are matched by student number. Deleting an unknown key is a
        no-op; batch imports upsert their records and keep everything else.
        """
        if isinstance(event, dict):
            event = ChangeEvent.model_validate(event)

        if event.kind == EventKind.RECORD_DELETED:
            for student_number in event.student_numbers:
                self._remove(student_number)
        else:
            for record in event.records:
                self._upsert(record)
        logger.debug("Applied %s #%d (%d students)", event.kind.value, event.sequence, len(self.records))
        self._persist()
