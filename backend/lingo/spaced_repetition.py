"""SM-2 scheduling and mastery tracking for vocabulary review.

Ratings run from 0 (forgot) to 4 (perfect). The easiness factor is updated
with the classic SM-2 formula on a 5-point quality scale, the review interval
grows 1 -> 6 -> interval * EF, and the interval actually used for the next
review is capped while a word's mastery is still low.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Optional


class Performance(IntEnum):
    FORGOT = 0
    DIFFICULT = 1
    HESITANT = 2
    EASY = 3
    PERFECT = 4


MIN_EASINESS = 1.3
DEFAULT_EASINESS = 2.5
MASTERED_THRESHOLD = 80

_MASTERY_DELTA = {
    Performance.FORGOT: -15,
    Performance.DIFFICULT: -5,
    Performance.HESITANT: 5,
    Performance.EASY: 10,
    Performance.PERFECT: 15,
}

# (mastery below, max interval in days)
_INTERVAL_CAPS = ((30, 2), (50, 5), (70, 10), (90, 20))


@dataclass
class ReviewState:
    easiness_factor: float = DEFAULT_EASINESS
    repetitions: int = 0
    interval: int = 0
    mastery: int = 0


@dataclass
class ReviewOutcome:
    easiness_factor: float
    repetitions: int
    interval: int
    mastery: int
    next_review: datetime
    newly_mastered: bool


def next_easiness(easiness: float, performance: Performance) -> float:
    q = 5 - int(performance)
    return max(MIN_EASINESS, easiness + (0.1 - q * (0.08 + q * 0.02)))


def update_mastery(mastery: int, performance: Performance) -> int:
    return max(0, min(100, mastery + _MASTERY_DELTA[Performance(performance)]))


def capped_interval(interval: int, mastery: int, performance: Performance) -> int:
    days = interval
    for below, cap in _INTERVAL_CAPS:
        if mastery < below:
            days = min(days, cap)
            break
    if performance == Performance.PERFECT:
        days = round(days * 1.3)
    elif performance == Performance.HESITANT:
        days = max(1, round(days * 0.8))
    return max(1, days)


def review(state: ReviewState, performance: int, now: Optional[datetime] = None) -> ReviewOutcome:
    perf = Performance(performance)
    now = now or datetime.utcnow()
    easiness = next_easiness(state.easiness_factor, perf)
    if perf < Performance.HESITANT:
        repetitions = 0
        interval = 1
    else:
        repetitions = state.repetitions + 1
        if repetitions == 1:
            interval = 1
        elif repetitions == 2:
            interval = 6
        else:
            interval = round(state.interval * easiness)
    mastery = update_mastery(state.mastery, perf)
    days = capped_interval(interval, mastery, perf)
    return ReviewOutcome(
        easiness_factor=round(easiness, 4),
        repetitions=repetitions,
        interval=interval,
        mastery=mastery,
        next_review=now + timedelta(days=days),
        newly_mastered=state.mastery < MASTERED_THRESHOLD <= mastery,
    )
