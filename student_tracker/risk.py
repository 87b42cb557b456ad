"""Risk classification logic: independent threshold labels per student."""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List

import numpy as np

from student_tracker.models import RiskLabel, RiskThresholds, StudentRecord

ISSUE_LABELS = (
    RiskLabel.FINANCIAL_RISK,
    RiskLabel.ATTENDANCE_RISK,
    RiskLabel.ACADEMIC_RISK,
    RiskLabel.INCOMPLETE_RECORD,
)

# Response keys for each label, in display order
PARTITION_KEYS = {
    RiskLabel.FINANCIAL_RISK: "financial_risk",
    RiskLabel.ATTENDANCE_RISK: "attendance_risk",
    RiskLabel.ACADEMIC_RISK: "academic_risk",
    RiskLabel.INCOMPLETE_RECORD: "incomplete_records",
    RiskLabel.NO_ISSUES: "no_issues",
}


def is_incomplete(record: StudentRecord) -> bool:
    """True when the business key or the program is missing or blank."""
    return not (record.student_number or "").strip() or not (record.program or "").strip()


def classify(record: StudentRecord, thresholds: RiskThresholds) -> FrozenSet[RiskLabel]:
    """
    Compute every risk label that applies to a student.

    Labels are independent: a student can carry several at once.
    Comparisons are strict, so a value exactly at a threshold is not at risk.

    Args:
        record: Student record
        thresholds: GPA floor, attendance floor and balance ceiling

    Returns:
        Full label set; {NO_ISSUES} when nothing applies
    """
    labels = set()
    if record.balance > thresholds.financial_limit:
        labels.add(RiskLabel.FINANCIAL_RISK)
    if record.attendance < thresholds.warning_attendance:
        labels.add(RiskLabel.ATTENDANCE_RISK)
    if record.gpa < thresholds.critical_gpa:
        labels.add(RiskLabel.ACADEMIC_RISK)
    if is_incomplete(record):
        labels.add(RiskLabel.INCOMPLETE_RECORD)
    if not labels:
        labels.add(RiskLabel.NO_ISSUES)
    return frozenset(labels)


def ordered_labels(labels: Iterable[RiskLabel]) -> List[RiskLabel]:
    """Labels in stable display order."""
    label_set = set(labels)
    return [label for label in PARTITION_KEYS if label in label_set]


@dataclass
class RiskPartition:
    """Records grouped by label. A record appears under every label it carries."""
    total: int = 0
    groups: Dict[RiskLabel, List[StudentRecord]] = field(
        default_factory=lambda: {label: [] for label in PARTITION_KEYS}
    )
    labels_by_student: Dict[str, FrozenSet[RiskLabel]] = field(default_factory=dict)

    def counts(self) -> Dict[str, int]:
        counts = {"total_students": self.total}
        for label, key in PARTITION_KEYS.items():
            counts[key] = len(self.groups[label])
        return counts


def partition(records: Iterable[StudentRecord], thresholds: RiskThresholds) -> RiskPartition:
    """
    Classify a whole record set in one pass.

    ``no_issues`` is exactly the records carrying no issue label.
    """
    result = RiskPartition()
    for record in records:
        labels = classify(record, thresholds)
        result.total += 1
        result.labels_by_student[record.id] = labels
        for label in labels:
            result.groups[label].append(record)
    return result


def aggregate_metrics(records: List[StudentRecord]) -> Dict[str, float]:
    """
    Aggregate figures for dashboards; no identities.

    Returns:
        Dict with total_students, average_gpa, average_attendance, total_balance
    """
    if not records:
        return {
            "total_students": 0,
            "average_gpa": 0.0,
            "average_attendance": 0.0,
            "total_balance": 0.0,
        }
    gpa = np.array([r.gpa for r in records], dtype=float)
    attendance = np.array([r.attendance for r in records], dtype=float)
    balance = np.array([r.balance for r in records], dtype=float)
    return {
        "total_students": len(records),
        "average_gpa": round(float(gpa.mean()), 2),
        "average_attendance": round(float(attendance.mean()), 2),
        "total_balance": float(balance.sum()),
    }
