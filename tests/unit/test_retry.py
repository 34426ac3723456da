import pytest

from stepwise.config import RetryConfig
from stepwise.errors import InvalidDefinition, PersistenceUnavailable
from stepwise.utils.retry import compute_backoff, with_retries

NO_WAIT = RetryConfig(attempts=3, base=0, jitter=0)


def test_compute_backoff_grows_exponentially():
    assert compute_backoff(1, base=2, jitter=0) == 2
    assert compute_backoff(3, base=2, jitter=0) == 8
    assert 4 <= compute_backoff(2, base=2, jitter=0.5) <= 4.5


@pytest.mark.asyncio
async def test_with_retries_recovers_from_transient_failure():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise PersistenceUnavailable("connection reset")
        return "ok"

    assert await with_retries(flaky, "flaky read", NO_WAIT) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_with_retries_gives_up_after_attempts():
    calls = []

    async def down():
        calls.append(1)
        raise PersistenceUnavailable("down")

    with pytest.raises(PersistenceUnavailable):
        await with_retries(down, "read", NO_WAIT)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_with_retries_does_not_retry_domain_errors():
    calls = []

    async def invalid():
        calls.append(1)
        raise InvalidDefinition("bad")

    with pytest.raises(InvalidDefinition):
        await with_retries(invalid, "read", NO_WAIT)
    assert len(calls) == 1
