"""HTTP client for the Student Standing Tracker API."""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from student_tracker import config
from student_tracker.errors import (
    RETRYABLE_ERRORS,
    STATUS_TO_ERROR,
    RateLimited,
    StudentTrackerError,
    TransientUnavailable,
)
from student_tracker.models import (
    Actor,
    AnalyticsSummary,
    ClassificationResponse,
    ImportSummary,
    InterventionType,
    PaginatedStudents,
    Pagination,
    RiskThresholds,
    StudentRecord,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = (502, 503, 504)


def actor_headers(actor: Optional[Actor]) -> Dict[str, str]:
    """Identity headers for an actor."""
    if actor is None:
        return {}
    headers = {'X-Actor-Role': actor.role.value}
    if actor.faculty_id:
        headers['X-Actor-Faculty'] = actor.faculty_id
    if actor.department_id:
        headers['X-Actor-Department'] = actor.department_id
    if actor.assigned_students:
        headers['X-Actor-Students'] = ','.join(actor.assigned_students)
    if actor.assigned_courses:
        headers['X-Actor-Courses'] = ','.join(actor.assigned_courses)
    return headers


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)


def error_from_response(response: httpx.Response) -> StudentTrackerError:
    """Map an error response onto the shared error types."""
    try:
        body = response.json()
    except ValueError:
        body = None

    detail = body.get('detail') if isinstance(body, dict) else None
    if not isinstance(detail, str):
        detail = str(detail) if detail is not None else (response.text or response.reason_phrase)
    field = body.get('field') if isinstance(body, dict) else None

    status = response.status_code
    if status == 429:
        return RateLimited(detail, retry_after=parse_retry_after(response.headers.get('Retry-After')))
    if status in TRANSIENT_STATUSES:
        return TransientUnavailable(detail)

    error_class = STATUS_TO_ERROR.get(status)
    if error_class is None:
        error = StudentTrackerError(detail, field=field)
        error.status_code = status
        return error
    return error_class(detail, field=field)


def _records_from_payload(payload: Any) -> List[StudentRecord]:
    # Bare list or {records, pagination} envelope
    if isinstance(payload, dict):
        payload = payload.get('records', [])
    return [StudentRecord.model_validate(item) for item in payload or []]


class StudentApiClient:
    """
    Synchronous API client with retry and backoff.

    Rate-limit (429) and transient (503, connection, timeout) failures are
    retried up to ``max_retries`` times, waiting ``base_delay * 2**attempt``
    seconds or the server's Retry-After. Other failures raise at once.
    """

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        actor: Optional[Actor] = None,
        max_retries: int = config.CLIENT_MAX_RETRIES,
        base_delay: float = config.CLIENT_BASE_DELAY_SECONDS,
        interactive_timeout: float = config.INTERACTIVE_TIMEOUT_SECONDS,
        bulk_timeout: float = config.BULK_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.interactive_timeout = httpx.Timeout(interactive_timeout)
        self.bulk_timeout = httpx.Timeout(bulk_timeout)
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            headers=actor_headers(actor),
            timeout=self.interactive_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "StudentApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, bulk: bool = False, **kwargs) -> httpx.Response:
        timeout = self.bulk_timeout if bulk else self.interactive_timeout
        for attempt in range(self.max_retries + 1):
            retry_after = None
            try:
                response = self._client.request(method, path, timeout=timeout, **kwargs)
            except httpx.TransportError as e:
                error = TransientUnavailable(f"Network error: unable to reach the server ({e})")
            else:
                if response.is_success:
                    return response
                error = error_from_response(response)
                if not isinstance(error, RETRYABLE_ERRORS):
                    raise error
                if isinstance(error, RateLimited):
                    retry_after = error.retry_after

            if attempt == self.max_retries:
                raise error
            delay = retry_after if retry_after is not None else self.base_delay * (2 ** attempt)
            logger.warning(
                "%s %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                method, path, error.message, delay, attempt + 1, self.max_retries,
            )
            self._sleep(delay)

    @staticmethod
    def _student_path(student_number: str) -> str:
        return f"/students/{quote(student_number, safe='')}"

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health").json()

    def list_students(self) -> List[StudentRecord]:
        """Every student in the caller's scope, newest first."""
        return _records_from_payload(self._request("GET", "/students").json())

    def fetch_page(self, page: int = 1, limit: int = config.DEFAULT_PAGE_LIMIT) -> PaginatedStudents:
        payload = self._request("GET", "/students", params={'page': page, 'limit': limit}).json()
        if isinstance(payload, dict) and 'pagination' in payload:
            return PaginatedStudents.model_validate(payload)

        # Older servers ignore paging and return a bare list
        records = _records_from_payload(payload)
        return PaginatedStudents(
            records=records,
            pagination=Pagination(
                page=1,
                limit=len(records),
                total=len(records),
                total_pages=1 if records else 0,
                has_next_page=False,
                has_prev_page=False,
            ),
        )

    def get_student(self, student_number: str) -> StudentRecord:
        return StudentRecord.model_validate(self._request("GET", self._student_path(student_number)).json())

    def create_student(self, data: Dict[str, Any]) -> StudentRecord:
        response = self._request("POST", "/students", json=data)
        return StudentRecord.model_validate(response.json())

    def update_student(self, student_number: str, changes: Dict[str, Any]) -> StudentRecord:
        response = self._request("PUT", self._student_path(student_number), json=changes)
        return StudentRecord.model_validate(response.json())

    def delete_student(self, student_number: str) -> None:
        if not student_number:
            raise ValueError("Student number is required")
        self._request("DELETE", self._student_path(student_number))

    def log_intervention(
        self,
        student_number: str,
        intervention_type: Union[InterventionType, str],
        notes: str = "",
    ) -> StudentRecord:
        body = {'type': InterventionType(intervention_type).value, 'notes': notes}
        response = self._request("POST", f"{self._student_path(student_number)}/interventions", json=body)
        return StudentRecord.model_validate(response.json())

    def classify(self, thresholds: Optional[RiskThresholds] = None) -> ClassificationResponse:
        params = thresholds.model_dump() if thresholds else None
        response = self._request("GET", "/students/classification", params=params)
        return ClassificationResponse.model_validate(response.json())

    def analytics_summary(self, thresholds: Optional[RiskThresholds] = None) -> AnalyticsSummary:
        params = thresholds.model_dump() if thresholds else None
        return AnalyticsSummary.model_validate(self._request("GET", "/analytics/summary", params=params).json())

    def import_csv(self, csv_text: str) -> ImportSummary:
        """Send CSV text for bulk import."""
        response = self._request(
            "POST", "/students/import", bulk=True,
            content=csv_text.encode('utf-8'),
            headers={'Content-Type': 'text/plain; charset=utf-8'},
        )
        return ImportSummary.model_validate(response.json())

    def import_file(self, filename: str, content: bytes) -> ImportSummary:
        """Upload a CSV or Excel file for bulk import."""
        response = self._request(
            "POST", "/students/import/file", bulk=True,
            files={'file': (filename, content)},
        )
        return ImportSummary.model_validate(response.json())

    def import_export_file(self) -> ImportSummary:
        response = self._request("POST", "/students/import/export-file", bulk=True)
        return ImportSummary.model_validate(response.json())

    def download_export(self) -> str:
        """Download the CSV export as text (BOM included)."""
        response = self._request("GET", "/students/export.csv", bulk=True)
        return response.content.decode('utf-8')
