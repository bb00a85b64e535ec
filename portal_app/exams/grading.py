"""
KJSEA achievement levels.

Single source of the grade bands used by rankings, pivots and reports.
Bands are ordered by descending minimum; the first band whose minimum the
percentage reaches wins, so the bands cover [0, 100] with no gaps.
``maximum`` is the exclusive upper edge of a band (89.999 is EE2), except
for EE1 which includes 100.
"""
import math
from collections import namedtuple
from numbers import Real

from ..errors import InputError


class AchievementLevel(namedtuple("AchievementLevel", ["code", "level", "minimum", "maximum", "description"])):
    __slots__ = ()

    @property
    def label(self):
        return f"{self.code} (L{self.level})"

    def to_dict(self):
        return {
            "code": self.code,
            "level": self.level,
            "label": self.label,
            "description": self.description,
            "minimum": self.minimum,
            "maximum": self.maximum,
        }


KJSEA_LEVELS = (
    AchievementLevel("EE1", 8, 90, 100, "Exceptional"),
    AchievementLevel("EE2", 7, 75, 90, "Excellent"),
    AchievementLevel("ME1", 6, 58, 75, "Very Good"),
    AchievementLevel("ME2", 5, 41, 58, "Good"),
    AchievementLevel("AE1", 4, 31, 41, "Average"),
    AchievementLevel("AE2", 3, 21, 31, "Below Average"),
    AchievementLevel("BE1", 2, 11, 21, "Poor"),
    AchievementLevel("BE2", 1, 0, 11, "Very Poor"),
)

_BY_CODE = {lvl.code: lvl for lvl in KJSEA_LEVELS}


def _check_percentage(percentage):
    if isinstance(percentage, bool) or not isinstance(percentage, Real):
        raise InputError(f"Percentage must be a number, got {percentage!r}.")
    value = float(percentage)
    if math.isnan(value) or math.isinf(value):
        raise InputError("Percentage is not a finite number.")
    if value < 0 or value > 100:
        raise InputError(f"Percentage {value} is outside 0-100.", details={"percentage": value})
    return value


def classify(percentage):
    """Map a percentage in [0, 100] to its achievement level."""
    value = _check_percentage(percentage)
    for lvl in KJSEA_LEVELS:
        if value >= lvl.minimum:
            return lvl
    # unreachable: the last band starts at 0
    raise InputError(f"No achievement level for {value}.")


def classify_score(score, max_marks):
    if isinstance(max_marks, bool) or not isinstance(max_marks, Real) or not max_marks > 0:
        raise InputError("Max marks must be a positive number.", details={"max_marks": max_marks})
    if isinstance(score, bool) or not isinstance(score, Real) or math.isnan(score):
        raise InputError("Score must be a number.", details={"score": score})
    return classify(score / max_marks * 100)


def level_for_code(code):
    try:
        return _BY_CODE[(code or "").strip().upper()]
    except KeyError:
        raise InputError(f"Unknown achievement level {code!r}.") from None


def ordinal_suffix(n):
    """1 -> 'st', 2 -> 'nd', 11 -> 'th', 23 -> 'rd'."""
    v = n % 100
    if 11 <= v <= 13:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")


def ordinal(n):
    return f"{n}{ordinal_suffix(n)}"
