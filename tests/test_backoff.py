import pytest

from async_mail_scheduler.backoff import DEFAULT_BASE_MINUTES, retry_delay, retry_schedule


def test_retry_delay_doubles_from_five_minutes():
    assert DEFAULT_BASE_MINUTES == 5
    assert retry_delay(0) == 5 * 60
    assert retry_delay(1) == 10 * 60
    assert retry_delay(2) == 20 * 60
    assert retry_delay(3) == 40 * 60


def test_retry_delay_is_strictly_increasing():
    delays = [retry_delay(attempt) for attempt in range(10)]
    assert all(later > earlier for earlier, later in zip(delays, delays[1:]))


def test_retry_delay_custom_base():
    assert retry_delay(0, base_minutes=1) == 60
    assert retry_delay(2, base_minutes=1) == 240


@pytest.mark.parametrize("attempt, base", [(-1, 5), (0, 0), (1, -5)])
def test_retry_delay_rejects_invalid_input(attempt, base):
    with pytest.raises(ValueError):
        retry_delay(attempt, base)


def test_retry_schedule_lists_delays_per_attempt():
    assert retry_schedule(3) == [300, 600, 1200]
    assert retry_schedule(0) == []
