"""Raw score to band conversion for the listening, reading and writing modules."""

from __future__ import annotations

import math
from bisect import bisect_right

# Listening/Reading conversion table: raw correct answers (out of 40) -> band.
# Counts between keys take the band of the nearest lower key.
BAND_SCORES = {
    39: 9.0, 37: 8.5, 35: 8.0, 32: 7.5, 30: 7.0,
    26: 6.5, 23: 6.0, 18: 5.5, 16: 5.0, 13: 4.5,
    10: 4.0, 8: 3.5, 6: 3.0, 4: 2.5, 3: 2.0, 2: 1.5, 1: 1.0, 0: 0.0,
}

MAX_RAW_SCORE = 40
MIN_BAND = 0.0
MAX_BAND = 9.0

_SORTED_KEYS = sorted(BAND_SCORES)


def band_for_raw_score(correct_answers):
    """Look up the band for a raw correct-answer count using floor semantics."""
    raw = max(0, min(int(correct_answers), MAX_RAW_SCORE))
    key = _SORTED_KEYS[bisect_right(_SORTED_KEYS, raw) - 1]
    return BAND_SCORES[key]


def round_to_nearest_half(value):
    """Round to the nearest 0.5, halves rounding up (6.25 -> 6.5, 6.75 -> 7.0)."""
    return math.floor(value * 2 + 0.5) / 2


def clamp_band(value):
    return max(MIN_BAND, min(MAX_BAND, float(value)))


def combine_writing_bands(task1_band, task2_band):
    """Task 2 carries twice the weight of Task 1."""
    combined = (clamp_band(task1_band) + 2 * clamp_band(task2_band)) / 3
    return round_to_nearest_half(combined)
