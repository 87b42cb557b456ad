"""Unit tests for parsers module."""

from io import BytesIO

import pandas as pd
import pytest

from student_tracker.errors import ValidationFailed
from student_tracker.models import Term
from student_tracker.parsers import (
    load_csv_text,
    load_table,
    map_columns,
    normalize_col_name,
    normalize_term,
    parse_int,
    parse_number,
    parse_row,
    table_rows,
)


def test_normalize_col_name():
    """Test header normalization."""
    assert normalize_col_name('\ufeff"Student Number"') == 'student number'
    assert normalize_col_name('  Year   of  Study ') == 'year of study'
    assert normalize_col_name(None) == ''


def test_map_columns_synonyms():
    """Test legacy and export header spellings map to fields."""
    mapping = map_columns(['StudentNumber', 'Course', 'yearOfStudy', 'Term', 'CGPA',
                           'Attendance (%)', 'Tuition Balance (UGX)', 'Notes'])
    assert mapping == {
        'student_number': 'StudentNumber',
        'program': 'Course',
        'year_of_study': 'yearOfStudy',
        'semester_of_study': 'Term',
        'gpa': 'CGPA',
        'attendance': 'Attendance (%)',
        'balance': 'Tuition Balance (UGX)',
    }


def test_map_columns_first_match_wins():
    """Test the first column wins when two map to the same field."""
    mapping = map_columns(['Student Number', 'Course', 'Program'])
    assert mapping['program'] == 'Course'


def test_parse_number():
    """Test numeric cell parsing."""
    assert parse_number('3.5') == 3.5
    assert parse_number('87%') == 87.0
    assert parse_number('1,200,000') == 1200000.0
    assert parse_number(' 42 ') == 42.0
    assert parse_number('') is None
    assert parse_number('abc') is None
    assert parse_number('nan') is None
    assert parse_number('Infinity') is None
    assert parse_number(None) is None


def test_parse_int():
    """Test integral parsing."""
    assert parse_int('3') == 3
    assert parse_int('3.0') == 3
    assert parse_int('3.5') is None
    assert parse_int('x') is None


def test_normalize_term():
    """Test semester normalization."""
    assert normalize_term('1') == Term.FIRST
    assert normalize_term('Second') == Term.SECOND
    assert normalize_term('Semester 2') == Term.SECOND
    assert normalize_term('Sem 1') == Term.FIRST
    assert normalize_term('Fall') == Term.FIRST
    assert normalize_term('Autumn') == Term.FIRST
    assert normalize_term('Spring') == Term.SECOND
    assert normalize_term('Semester 1 2024') == Term.FIRST
    assert normalize_term('') is None
    assert normalize_term('Summer') is None


def test_load_csv_text_handles_bom_blank_lines_and_quotes():
    """Test CSV loading keeps cells as text."""
    content = '\ufeffStudent Number,Program,GPA\n\nS001,"Arts, Humanities",3.0\nS002,BSc,2.5\n'
    df = load_csv_text(content)

    assert list(df.columns) == ['Student Number', 'Program', 'GPA']
    assert len(df) == 2
    assert df.iloc[0]['Program'] == 'Arts, Humanities'
    assert df.iloc[1]['GPA'] == '2.5'


def test_load_table_requires_student_number_column():
    """Test a file without a key column is rejected."""
    with pytest.raises(ValidationFailed) as exc_info:
        load_table('Name,Program\nJane,BSc\n')
    assert exc_info.value.field == 'student_number'


def test_load_table_rejects_empty_content():
    """Test empty or header-only content is rejected."""
    with pytest.raises(ValidationFailed):
        load_table('')
    with pytest.raises(ValidationFailed):
        load_table('Student Number,Program\n')


def test_load_table_csv_bytes():
    """Test uploaded CSV bytes with a BOM."""
    content = '\ufeffStudent Number,Program\nS001,BSc\n'.encode('utf-8')
    df = load_table(content, 'students.csv')
    assert table_rows(df) == [{'Student Number': 'S001', 'Program': 'BSc'}]


def test_load_table_excel():
    """Test uploaded Excel workbooks."""
    buffer = BytesIO()
    pd.DataFrame({
        'Student Number': ['S001', 'S002'],
        'Program': ['BSc', 'BA'],
        'GPA': [3.5, 2.0],
    }).to_excel(buffer, index=False, engine='openpyxl')

    df = load_table(buffer.getvalue(), 'students.xlsx')
    rows = table_rows(df)

    assert len(rows) == 2
    assert rows[0]['Student Number'] == 'S001'
    assert parse_number(rows[0]['GPA']) == 3.5


def test_parse_row():
    """Test row parsing separates valid, blank and invalid cells."""
    column_map = map_columns(['Student Number', 'Program', 'GPA', 'Attendance', 'Semester', 'Balance'])
    row = {
        'Student Number': ' S001 ',
        'Program': 'BSc',
        'GPA': 'three',
        'Attendance': '88%',
        'Semester': 'Semester 2',
        'Balance': '',
    }
    parsed = parse_row(row, column_map)

    assert parsed.student_number == 'S001'
    assert parsed.values == {
        'program': 'BSc',
        'attendance': 88.0,
        'semester_of_study': Term.SECOND,
    }
    assert parsed.invalid == {'gpa': 'three'}
