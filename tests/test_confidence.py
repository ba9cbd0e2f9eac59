import pytest

from tabpilot.confidence import (
    ConfidenceZone,
    should_ask,
    should_assume_announce,
    should_proceed,
    zone_of,
)
from tabpilot.state import Confidence


@pytest.mark.parametrize("value", [i / 100 for i in range(0, 101)])
def test_exactly_one_zone_holds(value):
    flags = [should_ask(value), should_assume_announce(value), should_proceed(value)]
    assert flags.count(True) == 1


@pytest.mark.parametrize("below, at, lower_zone, upper_zone", [
    (0.499, 0.5, ConfidenceZone.ASK, ConfidenceZone.ASSUME_ANNOUNCE),
    (0.899, 0.9, ConfidenceZone.ASSUME_ANNOUNCE, ConfidenceZone.PROCEED),
])
def test_boundaries_belong_to_higher_zone(below, at, lower_zone, upper_zone):
    assert zone_of(below) is lower_zone
    assert zone_of(at) is upper_zone


def test_out_of_range_clamps_to_nearest_zone():
    assert zone_of(-3.0) is ConfidenceZone.ASK
    assert zone_of(1.7) is ConfidenceZone.PROCEED


def test_nan_routes_to_ask():
    assert zone_of(float("nan")) is ConfidenceZone.ASK


def test_accepts_confidence_record():
    assert should_proceed(Confidence(overall=0.95))
    assert should_assume_announce(Confidence(overall=0.7))
    assert should_ask(Confidence(overall=0.3))


def test_thresholds_are_configurable():
    assert zone_of(0.6, ask_below=0.7, proceed_at=0.95) is ConfidenceZone.ASK
    assert should_proceed(0.8, ask_below=0.4, proceed_at=0.8)
