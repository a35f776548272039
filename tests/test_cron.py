from datetime import datetime

import pytest

from relayci.cron import CronExpression
from relayci.errors import CronError


def test_every_minute():
    assert CronExpression.parse("* * * * *").matches(datetime(2024, 5, 1, 13, 37))


def test_lists_ranges_steps():
    cron = CronExpression.parse("*/15 9-17 * * 1-5")
    assert cron.matches(datetime(2024, 5, 1, 9, 30))  # Wednesday
    assert not cron.matches(datetime(2024, 5, 1, 9, 31))
    assert not cron.matches(datetime(2024, 5, 1, 18, 0))
    assert not cron.matches(datetime(2024, 5, 4, 10, 0))  # Saturday


def test_names_and_sunday_as_seven():
    cron = CronExpression.parse("0 3 * jan,feb sun")
    assert cron.matches(datetime(2024, 1, 7, 3, 0))
    assert CronExpression.parse("0 3 * * 7").matches(datetime(2024, 1, 7, 3, 0))
    assert not cron.matches(datetime(2024, 3, 3, 3, 0))


def test_day_of_month_or_day_of_week():
    cron = CronExpression.parse("0 0 1 * mon")
    assert cron.matches(datetime(2024, 5, 1, 0, 0))  # the 1st, a Wednesday
    assert cron.matches(datetime(2024, 5, 6, 0, 0))  # a Monday
    assert not cron.matches(datetime(2024, 5, 7, 0, 0))


@pytest.mark.parametrize("bad", ["* * * *", "60 * * * *", "* 24 * * *", "*/0 * * * *", "5-1 * * * *", "x * * * *"])
def test_invalid_expressions(bad):
    with pytest.raises(CronError):
        CronExpression.parse(bad)
