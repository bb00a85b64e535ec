"""
Class ranking for a single exam.

Rankings are always rebuilt from the complete result set of the exam; nothing
is maintained incrementally. Positions use dense ranking on the total score:
equal totals share a position and the next lower total takes the next integer.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from ..errors import EmptyDataError, InputError
from .grading import AchievementLevel, classify
from .records import NO_DATA, ResultRow, format_number, validate_results

# Totals are compared at this precision so float noise cannot split a tie.
_TOTAL_PRECISION = 6


@dataclass(frozen=True)
class RankEntry:
    student_id: Any
    total: float
    possible: float
    percentage: Union[float, str]
    position: int
    level: Union[AchievementLevel, str]
    subject_count: int

    @property
    def has_data(self):
        return self.percentage != NO_DATA

    @property
    def totals_label(self):
        return f"{format_number(self.total)}/{format_number(self.possible)}"

    def to_dict(self):
        return {
            "student_id": self.student_id,
            "total": self.total,
            "possible": self.possible,
            "totals": self.totals_label,
            "percentage": round(self.percentage, 2) if self.has_data else NO_DATA,
            "position": self.position,
            "level": self.level.label if self.has_data else NO_DATA,
            "subject_count": self.subject_count,
        }


def rank_exam(results: Iterable[ResultRow], default_max_marks: Optional[float] = None) -> Dict[Any, RankEntry]:
    rows = validate_results(results, default_max_marks)
    if not rows:
        raise EmptyDataError("Data unavailable for this exam.")

    assessment_ids = {r.assessment_id for r in rows}
    if len(assessment_ids) > 1:
        raise InputError(
            "Results from more than one assessment cannot be ranked together.",
            details={"assessment_ids": sorted(str(a) for a in assessment_ids)},
        )

    totals = {}
    possible = {}
    counts = {}
    seen = set()
    for r in rows:
        key = (r.student_id, r.subject_id)
        if key in seen:
            raise InputError(
                "Duplicate result for student and subject.",
                details={"student_id": r.student_id, "subject_id": r.subject_id},
            )
        seen.add(key)
        totals[r.student_id] = totals.get(r.student_id, 0.0) + float(r.score)
        possible[r.student_id] = possible.get(r.student_id, 0.0) + float(r.max_marks)
        counts[r.student_id] = counts.get(r.student_id, 0) + 1

    distinct = sorted({round(t, _TOTAL_PRECISION) for t in totals.values()}, reverse=True)
    position_for = {t: i + 1 for i, t in enumerate(distinct)}

    ranking = {}
    for student_id, total in totals.items():
        max_total = possible[student_id]
        if max_total > 0:
            percentage = total / max_total * 100
            level = classify(percentage)
        else:
            percentage = NO_DATA
            level = NO_DATA
        ranking[student_id] = RankEntry(
            student_id=student_id,
            total=total,
            possible=max_total,
            percentage=percentage,
            position=position_for[round(total, _TOTAL_PRECISION)],
            level=level,
            subject_count=counts[student_id],
        )
    return ranking


def ranking_table(ranking: Dict[Any, RankEntry]) -> List[RankEntry]:
    """Entries ordered for display: by position, then student id."""
    return sorted(ranking.values(), key=lambda e: (e.position, str(e.student_id)))
