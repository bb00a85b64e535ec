import io

import pytest
from openpyxl import Workbook

from portal_app.errors import InputError
from portal_app.exams.imports import parse_results_upload


def test_csv_rows_become_entries():
    raw = b"Reg_no,Name,MATH,ENG\nS001,Alice,80,70\nS002,Brian,75,\n"
    entries, ignored = parse_results_upload("results.csv", raw)
    assert ignored == 0
    assert [(e["reg_no"], e["subject_code"], e["score"]) for e in entries] == [
        ("S001", "MATH", 80.0),
        ("S001", "ENG", 70.0),
        ("S002", "MATH", 75.0),
    ]
    assert entries[2]["line"] == 3


def test_tab_delimited_text():
    raw = "reg_no\tMATH\nS001\t55.5\n".encode("utf-8")
    entries, _ = parse_results_upload("results.txt", raw)
    assert entries == [{"line": 2, "reg_no": "S001", "subject_code": "MATH", "score": 55.5}]


def test_rows_for_other_assessments_are_ignored():
    raw = b"reg_no,exam,MATH\nS001,CAT 1,50\nS002,End Term,60\nS003,,70\n"
    entries, ignored = parse_results_upload("r.csv", raw, assessment_title="cat 1")
    assert [e["reg_no"] for e in entries] == ["S001", "S003"]
    assert ignored == 1


def test_non_numeric_score_rejects_upload():
    raw = b"reg_no,MATH,ENG\nS001,80,absent\nS002,x,60\n"
    with pytest.raises(InputError) as exc:
        parse_results_upload("r.csv", raw)
    cells = exc.value.details["cells"]
    assert {(c["line"], c["subject_code"]) for c in cells} == {(2, "ENG"), (3, "MATH")}


def test_nan_text_rejected():
    with pytest.raises(InputError):
        parse_results_upload("r.csv", b"reg_no,MATH\nS001,nan\n")


def test_missing_reg_no_column():
    with pytest.raises(InputError):
        parse_results_upload("r.csv", b"name,MATH\nAlice,50\n")


def test_no_subject_columns():
    with pytest.raises(InputError):
        parse_results_upload("r.csv", b"reg_no,name\nS001,Alice\n")


def test_empty_upload():
    with pytest.raises(InputError):
        parse_results_upload("r.csv", b"reg_no,MATH\n")


def test_unsupported_extension():
    with pytest.raises(InputError):
        parse_results_upload("r.pdf", b"%PDF")


def test_xlsx_upload():
    wb = Workbook()
    ws = wb.active
    ws.append(["Reg No", "Student Name", "MATH", "ENG"])
    ws.append(["S001", "Alice", 80, 65.5])
    ws.append(["S002", "Brian", None, 40])
    buf = io.BytesIO()
    wb.save(buf)

    entries, ignored = parse_results_upload("results.xlsx", buf.getvalue())
    assert ignored == 0
    assert [(e["reg_no"], e["subject_code"], e["score"]) for e in entries] == [
        ("S001", "MATH", 80.0),
        ("S001", "ENG", 65.5),
        ("S002", "ENG", 40.0),
    ]
