"""Tests for the fetch error policy."""

import pytest
from structlog.testing import capture_logs

from chainfeed.config import ErrorPolicy, RetryPolicy
from chainfeed.errors import FetchError, ParseError
from chainfeed.policy import guarded


class Flaky:
    """Fails `failures` times, then returns `value`."""

    def __init__(self, failures: int, value="ok", error=FetchError):
        self.failures = failures
        self.value = value
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return self.value


NO_WAIT = RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0)


class TestSuppress:
    async def test_success_passes_through(self):
        assert await guarded(Flaky(0)) == "ok"

    async def test_failure_returns_none_and_logs(self):
        with capture_logs() as logs:
            result = await guarded(Flaky(1, error=ParseError), event="Failed to fetch thing", thing_id=9)

        assert result is None
        assert logs == [{
            "event": "Failed to fetch thing",
            "log_level": "error",
            "error": "failure 1",
            "error_type": "ParseError",
            "thing_id": 9,
        }]

    async def test_other_exceptions_propagate(self):
        with pytest.raises(KeyError):
            await guarded(Flaky(1, error=KeyError))


class TestPropagate:
    async def test_raises(self):
        with pytest.raises(FetchError, match="failure 1"):
            await guarded(Flaky(1), policy=ErrorPolicy.PROPAGATE)


class TestRetry:
    async def test_recovers(self):
        fetch = Flaky(2)
        with capture_logs() as logs:
            assert await guarded(fetch, policy=ErrorPolicy.RETRY, retry=NO_WAIT) == "ok"

        assert fetch.calls == 3
        assert [log["attempt"] for log in logs] == [1, 2]

    async def test_gives_up_with_none(self):
        fetch = Flaky(10)
        with capture_logs() as logs:
            assert await guarded(fetch, policy=ErrorPolicy.RETRY, retry=NO_WAIT) is None

        assert fetch.calls == 3
        assert logs[-1]["log_level"] == "error"
