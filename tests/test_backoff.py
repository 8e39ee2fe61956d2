"""
Tests for the retry delay policies.
"""

import pytest

from ssh_broker.core.domain.session import RecoveryStrategy
from ssh_broker.core.services.backoff import exponential_delay, recovery_delay


class TestExponentialDelay:

    def test_doubles_until_cap(self) -> None:
        delays = [exponential_delay(n, 1000, 30000) for n in range(1, 8)]
        assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]

    def test_rejects_attempt_zero(self) -> None:
        with pytest.raises(ValueError):
            exponential_delay(0, 1000, 30000)


class TestRecoveryDelay:

    def test_immediate_is_constant(self) -> None:
        assert [recovery_delay(RecoveryStrategy.IMMEDIATE, n, 5000) for n in (1, 2, 3)] == \
            [5000, 5000, 5000]

    def test_linear(self) -> None:
        assert [recovery_delay(RecoveryStrategy.LINEAR, n, 5000) for n in (1, 2, 3)] == \
            [5000, 10000, 15000]

    def test_exponential_schedule(self) -> None:
        delays = [recovery_delay(RecoveryStrategy.EXPONENTIAL, n, 5000) for n in (1, 2, 3)]
        assert delays == [5000, 10000, 20000]

        # retries land at t+5s, t+15s, t+35s
        elapsed, schedule = 0, []
        for delay in delays:
            elapsed += delay
            schedule.append(elapsed)
        assert schedule == [5000, 15000, 35000]

    def test_exponential_is_capped(self) -> None:
        assert recovery_delay(RecoveryStrategy.EXPONENTIAL, 10, 5000, cap_ms=60000) == 60000
