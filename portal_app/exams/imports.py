"""
Results upload adapter.

Turns an uploaded sheet into clean (reg_no, subject_code, score) entries
before anything reaches the ranking code. Layout: one row per student, a
registration-number column, optional name / assessment title columns, and
one column per subject code.
"""
import csv
import io
import math

from openpyxl import load_workbook

from ..errors import InputError

ALLOWED_RESULT_EXTS = {"csv", "txt", "xlsx"}

REG_NO_COLUMNS = {"reg_no", "student_reg_no", "regno", "reg no", "admission_number"}
TITLE_COLUMNS = {"assessment_title", "assessment", "exam", "exam_title"}
NAME_COLUMNS = {"name", "student_name", "student name", "full name", "student"}


def _norm(header):
    return (header or "").strip().lower()


def _read_text(raw):
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise InputError("Upload is not UTF-8 text.") from None
    lines = [line for line in content.splitlines() if line.strip()]
    if not lines:
        return [], []
    delimiter = "\t" if "\t" in lines[0] else ","
    reader = csv.reader(lines, delimiter=delimiter)
    table = [[(cell or "").strip() for cell in row] for row in reader]
    return table[0], table[1:]


def _read_xlsx(raw):
    try:
        wb = load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
    except Exception as e:
        raise InputError(f"Could not read Excel file: {e}") from e
    ws = wb.active
    table = []
    for row in ws.iter_rows(values_only=True):
        cells = ["" if v is None else v for v in row]
        if any(str(c).strip() for c in cells):
            table.append(cells)
    wb.close()
    if not table:
        return [], []
    headers = [str(h).strip() for h in table[0]]
    return headers, table[1:]


def _parse_score(value):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        score = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            score = float(text)
        except ValueError:
            raise ValueError(text) from None
    if not math.isfinite(score):
        raise ValueError(str(value))
    return score


def parse_results_upload(filename, raw, assessment_title=None):
    """
    Parse an uploaded results sheet into entries.

    Returns ``(entries, ignored_rows)``. Rows for a different assessment
    title are ignored; blank score cells are skipped; a non-numeric score
    rejects the upload.
    """
    ext = filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""
    if ext not in ALLOWED_RESULT_EXTS:
        raise InputError("Upload must be a .csv, .txt or .xlsx file.")

    headers, body = _read_xlsx(raw) if ext == "xlsx" else _read_text(raw)
    if not body:
        raise InputError("Upload appears empty or misformatted.")

    normalized = [_norm(h) for h in headers]
    reg_idx = next((i for i, h in enumerate(normalized) if h in REG_NO_COLUMNS), None)
    if reg_idx is None:
        raise InputError("Upload needs a registration number column (Reg_no).")
    title_idx = next((i for i, h in enumerate(normalized) if h in TITLE_COLUMNS), None)
    fixed = REG_NO_COLUMNS | TITLE_COLUMNS | NAME_COLUMNS
    subject_cols = [(i, headers[i].strip()) for i, h in enumerate(normalized) if h and h not in fixed]
    if not subject_cols:
        raise InputError("No subject columns found.")

    entries = []
    ignored = 0
    bad = []
    wanted_title = _norm(assessment_title) if assessment_title else None
    for line_no, row in enumerate(body, start=2):
        cells = list(row) + [""] * (len(headers) - len(row))
        reg_no = str(cells[reg_idx]).strip()
        if not reg_no:
            ignored += 1
            continue
        if title_idx is not None and wanted_title:
            row_title = _norm(str(cells[title_idx]))
            if row_title and row_title != wanted_title:
                ignored += 1
                continue
        for idx, code in subject_cols:
            try:
                score = _parse_score(cells[idx])
            except ValueError as e:
                bad.append({"line": line_no, "subject_code": code, "value": str(e)})
                continue
            if score is None:
                continue
            entries.append({"line": line_no, "reg_no": reg_no, "subject_code": code, "score": score})

    if bad:
        raise InputError("Upload contains scores that are not numbers.", details={"cells": bad[:50]})
    return entries, ignored
