import abc
from dataclasses import dataclass
from datetime import date
from typing import List, Sequence, Tuple

from signal_governor.domain import ActivityWindow, ScoringConfig, ScoringResult

TOP_THRESHOLD = 0.3
TOP_BAND_MAX_DAYS = 5
LOWER_FREQUENCY_COUNT = 2
UPPER_FREQUENCY_COUNT = 5


class Scorer(abc.ABC):
    """Opaque scoring collaborator (an LLM behind an HTTP API in production)."""

    @abc.abstractmethod
    async def score(self, window: ActivityWindow, config: ScoringConfig) -> ScoringResult:
        ...

    async def aclose(self) -> None:
        return None


@dataclass(frozen=True)
class DailyRawScore:
    day: date
    raw_value: float
    max_value: float


def _round2(value: float) -> float:
    return round(value * 100) / 100


def calculate_smart_score(
    raw_scores: Sequence[DailyRawScore],
    *,
    previous_days: int,
    max_value: float,
    today: date,
) -> Tuple[float, List[date]]:
    """Aggregate daily raw scores into one smart score.

    Averages the top band of days (those within TOP_THRESHOLD of the best
    normalized day, at most TOP_BAND_MAX_DAYS), scaled by how many days made
    the band. Returns the score and the days in the band.
    """
    normalized: List[Tuple[float, date]] = []
    for row in raw_scores:
        age = (today - row.day).days
        if age < 0 or age > previous_days or not row.max_value:
            value = 0.0
        else:
            value = _round2(row.raw_value / row.max_value)
        normalized.append((value, row.day))
    if not normalized:
        return 0.0, []

    top = max(v for v, _ in normalized)
    threshold = _round2(max(0.0, top - TOP_THRESHOLD))
    band = sorted((entry for entry in normalized if entry[0] >= threshold), key=lambda e: e[0], reverse=True)
    band = band[:TOP_BAND_MAX_DAYS]
    if not band:
        return 0.0, []

    average = _round2(_round2(sum(v for v, _ in band)) / len(band))
    count = len(band)
    if count >= UPPER_FREQUENCY_COUNT:
        multiplier = 1.0
    elif count > LOWER_FREQUENCY_COUNT:
        multiplier = 0.85
    elif count == LOWER_FREQUENCY_COUNT:
        multiplier = 0.7
    else:
        multiplier = 0.5
    return float(round(average * max_value * multiplier)), [d for _, d in band]


def clamp_score(value: float, max_value: float) -> float:
    return max(0.0, min(float(value), float(max_value)))
