import pytest
from sqlalchemy.exc import OperationalError

from salon_booking.core.exceptions import NotFound
from salon_booking.core.retry import RetryPolicy, exponential_backoff


def transient():
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_retries_transient_errors_then_succeeds(self):
        sleep = FakeSleep()
        policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(0.1), sleep=sleep)
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise transient()
            return "ok"

        assert await policy.run(operation) == "ok"
        assert len(calls) == 3
        assert sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        policy = RetryPolicy(max_attempts=2, sleep=FakeSleep())
        calls = []

        async def operation():
            calls.append(1)
            raise transient()

        with pytest.raises(OperationalError):
            await policy.run(operation)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_domain_errors_are_not_retried(self):
        policy = RetryPolicy(max_attempts=5, sleep=FakeSleep())
        calls = []

        async def operation():
            calls.append(1)
            raise NotFound("Branch", 1)

        with pytest.raises(NotFound):
            await policy.run(operation)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_on_retry_runs_between_attempts(self):
        policy = RetryPolicy(max_attempts=2, sleep=FakeSleep())
        resets = []

        async def reset():
            resets.append(1)

        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) == 1:
                raise transient()
            return len(resets)

        assert await policy.run(operation, on_retry=reset) == 1

    def test_no_retry_policy_runs_once(self):
        assert RetryPolicy.no_retry().max_attempts == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
