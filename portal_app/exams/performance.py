from dataclasses import dataclass
from datetime import date
from typing import Any, List, Optional

from .grading import classify
from .records import NO_DATA

EXCELLENT_CODES = ("EE1", "EE2")


@dataclass(frozen=True)
class ExamPerformance:
    """One exam of a student's history, taken from the exam's ranking."""
    assessment_id: Any
    title: str
    term: Optional[str]
    year: Optional[int]
    assessment_date: Optional[date]
    entry: Any  # RankEntry
    class_size: int

    def to_dict(self):
        return {
            "assessment_id": self.assessment_id,
            "title": self.title,
            "term": self.term,
            "year": self.year,
            "assessment_date": self.assessment_date.isoformat() if self.assessment_date else None,
            "class_size": self.class_size,
            **{k: v for k, v in self.entry.to_dict().items() if k != "student_id"},
        }


def summarize_performance(history: List[ExamPerformance], recent=6):
    """
    Headline figures over a student's exam history, newest first.

    Exams whose percentage is unavailable are left out of the averages
    rather than counted as zero.
    """
    ordered = sorted(
        history,
        key=lambda p: (p.assessment_date or date.min, str(p.assessment_id)),
        reverse=True,
    )
    scored = [p for p in ordered if p.entry.has_data]
    if not scored:
        return {
            "exams": len(ordered),
            "average_percentage": NO_DATA,
            "overall_level": NO_DATA,
            "trend": NO_DATA,
            "best_position": NO_DATA,
            "worst_position": NO_DATA,
            "top3_count": 0,
            "excellent_count": 0,
        }

    window = scored[:recent]
    average = sum(p.entry.percentage for p in window) / len(window)
    if len(window) < 2:
        trend = NO_DATA
    elif window[0].entry.percentage > window[1].entry.percentage:
        trend = "improving"
    elif window[0].entry.percentage < window[1].entry.percentage:
        trend = "declining"
    else:
        trend = "stable"

    positions = [p.entry.position for p in ordered]
    return {
        "exams": len(ordered),
        "average_percentage": round(average, 2),
        "overall_level": classify(average).label,
        "trend": trend,
        "best_position": min(positions),
        "worst_position": max(positions),
        "top3_count": sum(1 for p in window if p.entry.position <= 3),
        "excellent_count": sum(1 for p in scored if p.entry.level.code in EXCELLENT_CODES),
    }
