"""
Subject x exam matrix for one student.

The Totals and Position trailer rows come from rank_exam output for each exam;
they are never recomputed here so the two views cannot drift apart.
"""
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..errors import EmptyDataError, InputError
from .records import NO_DATA, ResultRow, format_number, validate_results

TOTALS_ROW = "Totals"
POSITION_ROW = "Position"
_RESERVED = {TOTALS_ROW.lower(), POSITION_ROW.lower()}

_UNNUMBERED = sys.maxsize
_CAT = re.compile(r"cat\.?\s*(\d+)")
_TRAILING = re.compile(r"(\d+)\s*$")


def extract_exam_number(title):
    """
    Ordering number embedded in an exam title.

    "CAT 2" and "Cat. 2" give 2, "Exam 10" gives 10, mid term exams sort at 10
    and end of term / final / annual exams at 20. Titles without a number sort
    last.
    """
    lower = (title or "").lower()
    m = _CAT.search(lower)
    if m:
        return int(m.group(1))
    m = _TRAILING.search(title or "")
    if m:
        return int(m.group(1))
    if "mid term" in lower or "mid-term" in lower:
        return 10
    if any(k in lower for k in ("end term", "end-term", "final", "annual")):
        return 20
    return _UNNUMBERED


def exam_sort_key(title):
    return (extract_exam_number(title), (title or "").lower(), title or "")


def sort_exam_titles(titles: Iterable[str]) -> List[str]:
    return sorted({t for t in titles if t}, key=exam_sort_key)


@dataclass
class PivotRow:
    subject: str
    scores: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_trailer(self):
        return self.subject in (TOTALS_ROW, POSITION_ROW)

    def to_dict(self):
        return {"subject": self.subject, "scores": dict(self.scores)}


def build_pivot(
    results: Iterable[ResultRow],
    student_id,
    exam_titles: Optional[Iterable[str]] = None,
    rankings: Optional[Mapping[str, Any]] = None,
) -> List[PivotRow]:
    """
    Build one row per subject plus the Totals and Position rows.

    ``rankings`` maps exam title to the student's RankEntry for that exam.
    Exams missing from it show NO_DATA in both trailer rows.
    """
    rows = [r for r in validate_results(results) if str(r.student_id) == str(student_id)]
    if not rows:
        raise EmptyDataError("No results recorded for this student.", details={"student_id": student_id})

    for r in rows:
        if not r.subject_name or not r.exam_title:
            raise InputError(
                "Result rows need a subject name and exam title to be pivoted.",
                details={"subject_id": r.subject_id, "assessment_id": r.assessment_id},
            )
        if r.subject_name.strip().lower() in _RESERVED:
            raise InputError(
                f"A subject cannot be named {r.subject_name!r} in the pivot.",
                details={"subject_id": r.subject_id, "reserved": [TOTALS_ROW, POSITION_ROW]},
            )

    if exam_titles is None:
        exam_titles = [r.exam_title for r in rows]
    exams = sort_exam_titles(exam_titles)

    grouped = {}
    for r in rows:
        by_exam = grouped.setdefault(r.subject_name, {})
        if r.exam_title in by_exam:
            raise InputError(
                "Duplicate score for subject and exam.",
                details={"subject": r.subject_name, "exam": r.exam_title},
            )
        by_exam[r.exam_title] = r.score

    pivot = [
        PivotRow(subject, {title: grouped[subject].get(title, NO_DATA) for title in exams})
        for subject in sorted(grouped, key=lambda s: (s.lower(), s))
    ]

    rankings = rankings or {}
    totals = PivotRow(TOTALS_ROW)
    positions = PivotRow(POSITION_ROW)
    for title in exams:
        entry = rankings.get(title)
        if entry is None:
            totals.scores[title] = NO_DATA
            positions.scores[title] = NO_DATA
        else:
            totals.scores[title] = f"{format_number(entry.total)}/{format_number(entry.possible)}"
            positions.scores[title] = entry.position
    pivot.append(totals)
    pivot.append(positions)
    return pivot
