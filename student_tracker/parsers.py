"""Tabular import parsing: header synonyms, loading and field normalization."""

import logging
import re
from dataclasses import dataclass, field
from io import BytesIO, StringIO
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from student_tracker.errors import ValidationFailed
from student_tracker.models import Term

logger = logging.getLogger(__name__)

BOM = '\ufeff'

# Accepted header spellings per logical field, compared after normalize_col_name.
# Columns not listed here are ignored.
FIELD_SYNONYMS: Dict[str, List[str]] = {
    "student_number": [
        "student number", "studentnumber", "student_number", "student no",
        "student#", "student id", "studentid",
    ],
    "program": [
        "program", "programme", "course", "program name", "course name", "programname",
    ],
    "year_of_study": [
        "year of study", "yearofstudy", "year_of_study", "year",
    ],
    "semester_of_study": [
        "semester of study", "semesterofstudy", "semester_of_study", "semester", "term",
    ],
    "gpa": ["gpa", "cgpa"],
    "attendance": [
        "attendance", "attendance (%)", "attendance %", "attendancerate",
        "attendance_rate", "attendance rate",
    ],
    "balance": [
        "balance", "balance (ugx)", "tuition balance (ugx)", "tuitionbalance",
        "tuition_balance", "tuition balance",
    ],
}


def normalize_col_name(col_name) -> str:
    """Normalize a header for matching: lowercase, no quotes/BOM, single spaces."""
    if col_name is None or (not isinstance(col_name, str) and pd.isna(col_name)):
        return ""
    normalized = str(col_name).replace(BOM, '').replace('"', '').strip().lower()
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.strip()


def map_columns(columns: List[Any]) -> Dict[str, Any]:
    """
    Match header cells to logical fields.

    Args:
        columns: Header cells in file order

    Returns:
        Dict of logical field -> original column label; the first matching
        column wins when several map to the same field
    """
    mapping: Dict[str, Any] = {}
    for col in columns:
        normalized = normalize_col_name(col)
        for target, variations in FIELD_SYNONYMS.items():
            if normalized in variations:
                if target not in mapping:
                    mapping[target] = col
                break
    return mapping


def load_csv_text(content: str) -> pd.DataFrame:
    """
    Read newline-delimited CSV text with a header row.

    All cells are kept as strings; blank lines are dropped.
    """
    if content.startswith(BOM):
        content = content[1:]
    if not content.strip():
        raise ValidationFailed("CSV content is required")
    # Rows with surplus cells are truncated rather than failing the whole file
    df = pd.read_csv(
        StringIO(content),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        skipinitialspace=True,
        index_col=False,
        engine="python",
        on_bad_lines=lambda bad_line: bad_line,
    )
    return df


def load_excel_bytes(file_bytes: bytes) -> pd.DataFrame:
    """Read the first worksheet of an .xlsx workbook as strings."""
    df = pd.read_excel(BytesIO(file_bytes), sheet_name=0, dtype=str, engine="openpyxl")
    return df.fillna("")


def load_table(content: Union[str, bytes], filename: Optional[str] = None) -> pd.DataFrame:
    """
    Load an import payload into a DataFrame of strings.

    Args:
        content: CSV text, or raw bytes of a CSV/Excel file
        filename: Optional file name used to detect Excel uploads

    Returns:
        DataFrame with the original header labels
    """
    if isinstance(content, bytes):
        if filename and filename.lower().endswith((".xlsx", ".xlsm")):
            df = load_excel_bytes(content)
        else:
            df = load_csv_text(content.decode("utf-8-sig"))
    else:
        df = load_csv_text(content)

    if df.empty:
        raise ValidationFailed("File must contain a header row and at least one data row")

    if "student_number" not in map_columns(list(df.columns)):
        headers = ", ".join(normalize_col_name(c) for c in df.columns)
        raise ValidationFailed(
            f"File must contain a Student Number column. Found headers: {headers}. "
            f"Acceptable column names: Student Number, StudentNumber, Student_Number",
            field="student_number",
        )
    logger.info("Loaded import table: %d rows, columns %s", len(df), list(df.columns))
    return df


def table_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Rows as dicts keyed by the original header labels."""
    return df.to_dict(orient="records")


def clean_cell(value) -> str:
    """Cell value as a trimmed string; NaN/None become ''."""
    if value is None:
        return ""
    if not isinstance(value, str) and pd.isna(value):
        return ""
    return str(value).strip().strip('"').strip()


def parse_number(value) -> Optional[float]:
    """
    Parse a numeric cell.

    Accepts '3.5', '87%', '1,200,000'. Returns None for blank, NaN,
    Infinity or unparseable input.
    """
    text = clean_cell(value)
    if not text:
        return None
    text = text.replace('%', '').replace(',', '').strip()
    try:
        val = float(text)
    except (ValueError, TypeError):
        return None
    if np.isnan(val) or np.isinf(val):
        return None
    return val


def parse_int(value) -> Optional[int]:
    """Parse an integral cell ('3', '3.0'); None when blank or fractional."""
    val = parse_number(value)
    if val is None or not float(val).is_integer():
        return None
    return int(val)


def normalize_term(value) -> Optional[Term]:
    """
    Normalize a semester cell to Term.

    Handles '1'/'2', 'one'/'first', 'Semester 2', 'Sem 1', 'Fall' (1),
    'Autumn' (1), 'Spring' (2), and a lone 1 or 2 inside longer text
    ('Semester 1 2024'). Returns None when blank or unrecognized.
    """
    text = clean_cell(value).lower()
    if not text:
        return None

    if text in ('1', 'one', 'first'):
        return Term.FIRST
    if text in ('2', 'two', 'second'):
        return Term.SECOND

    if 'sem' in text:
        if re.search(r'\b(1|one|first)\b', text):
            return Term.FIRST
        if re.search(r'\b(2|two|second)\b', text):
            return Term.SECOND

    if 'fall' in text or 'autumn' in text:
        return Term.FIRST
    if 'spring' in text:
        return Term.SECOND

    match = re.search(r'\b([12])\b', text)
    if match:
        return Term(match.group(1))
    return None


@dataclass
class ParsedRow:
    """One import row after column lookup and value parsing."""
    student_number: str
    values: Dict[str, Any] = field(default_factory=dict)
    # Fields present in the row whose text could not be parsed
    invalid: Dict[str, str] = field(default_factory=dict)


_PARSERS = {
    "year_of_study": parse_int,
    "semester_of_study": normalize_term,
    "gpa": parse_number,
    "attendance": parse_number,
    "balance": parse_number,
}


def parse_row(raw_row: Mapping[str, Any], column_map: Dict[str, Any]) -> ParsedRow:
    """
    Extract and parse the recognized fields of one raw row.

    Blank cells count as absent. Present but unparseable cells are reported
    in ``invalid`` and left out of ``values``.
    """
    parsed = ParsedRow(student_number=clean_cell(raw_row.get(column_map.get("student_number"), "")))

    program_col = column_map.get("program")
    if program_col is not None:
        program = clean_cell(raw_row.get(program_col))
        if program:
            parsed.values["program"] = program

    for field_name, parser in _PARSERS.items():
        col = column_map.get(field_name)
        if col is None:
            continue
        raw_value = clean_cell(raw_row.get(col))
        if not raw_value:
            continue
        value = parser(raw_value)
        if value is None:
            parsed.invalid[field_name] = raw_value
        else:
            parsed.values[field_name] = value
    return parsed
