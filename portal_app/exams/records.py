"""Plain result rows handed to the aggregation functions, and their validation."""
import math
from dataclasses import dataclass, replace
from datetime import date
from numbers import Real
from typing import Any, Iterable, List, Optional

from ..errors import InputError

# Rendered wherever a value is unavailable; never confused with a score of 0.
NO_DATA = "-"


@dataclass(frozen=True)
class ResultRow:
    student_id: Any
    assessment_id: Any
    subject_id: Any
    score: float
    max_marks: Optional[float]
    subject_name: Optional[str] = None
    exam_title: Optional[str] = None
    assessment_date: Optional[date] = None


def _is_number(value):
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def validate_results(results: Iterable[ResultRow], default_max_marks: Optional[float] = None) -> List[ResultRow]:
    """
    Check every row before anything is computed from it.

    A missing max_marks is only filled in when the caller passes an explicit
    default; otherwise the row is rejected.
    """
    if default_max_marks is not None and not (_is_number(default_max_marks) and default_max_marks > 0):
        raise InputError("Default max marks must be a positive number.")

    clean = []
    for row in results:
        where = {"student_id": row.student_id, "assessment_id": row.assessment_id, "subject_id": row.subject_id}
        if not _is_number(row.score):
            raise InputError("Score is not a finite number.", details={**where, "score": repr(row.score)})
        if row.score < 0:
            raise InputError("Score cannot be negative.", details={**where, "score": row.score})

        max_marks = row.max_marks
        if max_marks is None:
            if default_max_marks is None:
                raise InputError("Max marks missing for result.", details=where)
            max_marks = float(default_max_marks)
            row = replace(row, max_marks=max_marks)
        if not _is_number(max_marks) or max_marks <= 0:
            raise InputError("Max marks must be a positive number.", details={**where, "max_marks": repr(max_marks)})
        if row.score > max_marks:
            raise InputError(
                "Score exceeds max marks.",
                details={**where, "score": row.score, "max_marks": max_marks},
            )
        clean.append(row)
    return clean


def format_number(value):
    """150.0 -> '150', 75.5 -> '75.5'."""
    if value is None:
        return NO_DATA
    rounded = round(float(value), 2)
    if rounded.is_integer():
        return str(int(rounded))
    return f"{rounded:g}"
