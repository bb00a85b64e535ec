import math

import pytest

from portal_app.errors import InputError
from portal_app.exams.grading import (
    KJSEA_LEVELS,
    classify,
    classify_score,
    level_for_code,
    ordinal,
)


@pytest.mark.parametrize(
    "percentage, code",
    [
        (100, "EE1"),
        (90, "EE1"),
        (89.999, "EE2"),
        (75, "EE2"),
        (74.99, "ME1"),
        (58, "ME1"),
        (57.99, "ME2"),
        (41, "ME2"),
        (40.5, "AE1"),
        (31, "AE1"),
        (21, "AE2"),
        (20.99, "BE1"),
        (11, "BE1"),
        (10.99, "BE2"),
        (0, "BE2"),
    ],
)
def test_band_boundaries(percentage, code):
    assert classify(percentage).code == code


@pytest.mark.parametrize("bad", [float("nan"), math.inf, -math.inf, -0.01, 100.01, 150])
def test_rejects_non_finite_and_out_of_range(bad):
    with pytest.raises(InputError):
        classify(bad)


@pytest.mark.parametrize("bad", ["90", None, True])
def test_rejects_non_numbers(bad):
    with pytest.raises(InputError):
        classify(bad)


def test_bands_cover_range_without_gaps():
    ordered = sorted(KJSEA_LEVELS, key=lambda lvl: lvl.minimum)
    assert ordered[0].minimum == 0
    assert ordered[-1].maximum == 100
    for lower, upper in zip(ordered, ordered[1:]):
        assert lower.maximum == upper.minimum


def test_label_and_dict():
    lvl = classify(92)
    assert lvl.label == "EE1 (L8)"
    d = lvl.to_dict()
    assert d["code"] == "EE1"
    assert d["description"] == "Exceptional"


def test_classify_score_uses_percentage():
    assert classify_score(150, 200).code == "EE2"
    with pytest.raises(InputError):
        classify_score(10, 0)


def test_level_for_code():
    assert level_for_code("me2").level == 5
    with pytest.raises(InputError):
        level_for_code("XX")


@pytest.mark.parametrize("n, text", [(1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th"), (11, "11th"), (12, "12th"), (22, "22nd"), (113, "113th")])
def test_ordinal(n, text):
    assert ordinal(n) == text
