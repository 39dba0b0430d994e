from datetime import date, timedelta

import pytest

from signal_governor.services.scoring import DailyRawScore, calculate_smart_score, clamp_score

TODAY = date(2024, 6, 1)


def days(*values, max_value=100.0):
    return [DailyRawScore(day=TODAY - timedelta(days=i), raw_value=v, max_value=max_value) for i, v in enumerate(values)]


def test_no_raw_scores_gives_zero():
    assert calculate_smart_score([], previous_days=90, max_value=100.0, today=TODAY) == (0.0, [])


def test_single_active_day_is_halved():
    value, band = calculate_smart_score(days(80), previous_days=90, max_value=100.0, today=TODAY)
    assert value == 40.0
    assert band == [TODAY]


def test_outlier_days_fall_outside_top_band():
    value, band = calculate_smart_score(days(100, 60), previous_days=90, max_value=100.0, today=TODAY)
    assert value == 50.0
    assert band == [TODAY]


def test_two_close_days_use_two_day_multiplier():
    value, band = calculate_smart_score(days(100, 80), previous_days=90, max_value=100.0, today=TODAY)
    assert value == 63.0
    assert len(band) == 2


def test_consistent_activity_earns_full_score():
    value, band = calculate_smart_score(days(100, 100, 100, 100, 100, 100), previous_days=90, max_value=100.0, today=TODAY)
    assert value == 100.0
    assert len(band) == 5


def test_days_outside_lookback_count_as_zero():
    rows = [DailyRawScore(day=TODAY - timedelta(days=120), raw_value=100.0, max_value=100.0)]
    assert calculate_smart_score(rows, previous_days=90, max_value=100.0, today=TODAY)[0] == 0.0


def test_raw_values_are_normalized_per_row():
    value, _ = calculate_smart_score(days(8, max_value=10.0), previous_days=90, max_value=50.0, today=TODAY)
    assert value == 20.0


@pytest.mark.parametrize("raw, expected", [(-5, 0.0), (42.5, 42.5), (150, 100.0)])
def test_clamp_score(raw, expected):
    assert clamp_score(raw, 100.0) == expected
