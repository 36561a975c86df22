"""Tests for polling.py - deadlines and poll_until()."""

from nodeprep.polling import Deadline, SystemClock, poll_until


class TestDeadline:
    def test_remaining_and_expiry(self, fake_clock):
        deadline = Deadline(fake_clock, 10)

        assert deadline.remaining() == 10
        assert not deadline.expired()

        fake_clock.sleep(10)

        assert deadline.remaining() == 0
        assert deadline.expired()

    def test_sleep_never_overshoots(self, fake_clock):
        """Test the final sleep is cut to the remaining time."""
        deadline = Deadline(fake_clock, 1.25)

        deadline.sleep(1)
        deadline.sleep(1)
        deadline.sleep(1)

        assert fake_clock.sleeps == [1, 0.25]


class TestPollUntil:
    def test_returns_first_result(self, fake_clock):
        answers = iter([None, None, "/dev/sdf"])

        result = poll_until(lambda: next(answers), fake_clock, 5, 0.5)

        assert result == "/dev/sdf"
        assert fake_clock.sleeps == [0.5, 0.5]

    def test_none_after_deadline(self, fake_clock):
        calls = []

        def check():
            calls.append(fake_clock.now())
            return None

        assert poll_until(check, fake_clock, 2, 0.5) is None
        assert len(calls) == 4
        assert sum(fake_clock.sleeps) == 2

    def test_zero_timeout_never_checks(self, fake_clock):
        assert poll_until(lambda: "x", fake_clock, 0, 0.5) is None


def test_system_clock_is_monotonic():
    clock = SystemClock()
    first = clock.now()
    clock.sleep(0)
    assert clock.now() >= first
