"""Rolling per-user, per-module performance aggregates."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

from ielts_core.models import PerformanceAnalytics, TestResult

DEFAULT_COOLDOWN = timedelta(hours=24)


def rolling_mean(old_average, old_count, new_value):
    if old_count <= 0:
        return float(new_value)
    return (old_average * old_count + new_value) / (old_count + 1)


def update(previous: PerformanceAnalytics | None, result: TestResult, now,
           cooldown=DEFAULT_COOLDOWN) -> PerformanceAnalytics:
    """Fold one persisted result into the learner's analytics.

    Pure: returns a new record, ``previous`` is left untouched. The store is
    responsible for serialising concurrent updates for the same user.
    """
    if previous is None or previous.total_tests == 0:
        analytics = PerformanceAnalytics(
            user_id=result.user_id,
            module=result.module,
            total_tests=1,
            average_band_score=result.band_score,
            best_band_score=result.band_score,
            latest_band_score=result.band_score,
            average_time_spent=float(result.time_spent),
            average_audio_time=float(result.audio_time_spent),
        )
    else:
        count = previous.total_tests
        analytics = replace(
            previous,
            total_tests=count + 1,
            average_band_score=rolling_mean(previous.average_band_score, count, result.band_score),
            best_band_score=max(previous.best_band_score, result.band_score),
            latest_band_score=result.band_score,
            average_time_spent=rolling_mean(previous.average_time_spent, count, result.time_spent),
            average_audio_time=rolling_mean(previous.average_audio_time, count, result.audio_time_spent),
        )

    analytics.audio_utilization_rate = result.audio_utilization
    analytics.completion_rate = result.completion_rate
    analytics.last_test_date = now
    # Only consulted by the quota policy for cooldown tiers
    analytics.next_allowed_attempt_at = now + cooldown
    return analytics
