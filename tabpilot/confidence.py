"""
TABPILOT Confidence Router

Maps one scalar confidence score onto a routing zone:

    overall < 0.5         → ask             (clarify with the user)
    0.5 <= overall < 0.9  → assume_announce (proceed, disclose assumptions)
    overall >= 0.9        → proceed

Each boundary belongs to the higher zone. Out-of-range input falls into the
nearest zone; the router never raises.
"""

from __future__ import annotations

import math
from enum import Enum

from tabpilot.state import Confidence

ASK_BELOW = 0.5
PROCEED_AT = 0.9


class ConfidenceZone(str, Enum):
    ASK = "ask"
    ASSUME_ANNOUNCE = "assume_announce"
    PROCEED = "proceed"


def zone_of(
    overall: float,
    ask_below: float = ASK_BELOW,
    proceed_at: float = PROCEED_AT,
) -> ConfidenceZone:
    if overall is None or math.isnan(overall):
        return ConfidenceZone.ASK
    if overall >= proceed_at:
        return ConfidenceZone.PROCEED
    if overall >= ask_below:
        return ConfidenceZone.ASSUME_ANNOUNCE
    return ConfidenceZone.ASK


def _overall(confidence: Confidence | float) -> float:
    if isinstance(confidence, Confidence):
        return confidence.overall
    return float(confidence)


def should_ask(confidence: Confidence | float, **thresholds: float) -> bool:
    return zone_of(_overall(confidence), **thresholds) is ConfidenceZone.ASK


def should_assume_announce(confidence: Confidence | float, **thresholds: float) -> bool:
    return zone_of(_overall(confidence), **thresholds) is ConfidenceZone.ASSUME_ANNOUNCE


def should_proceed(confidence: Confidence | float, **thresholds: float) -> bool:
    return zone_of(_overall(confidence), **thresholds) is ConfidenceZone.PROCEED
