import pytest

from coach_core.domain.exceptions import ApiError, ProviderOverloadedError
from coach_core.infrastructure.retry import RetryPolicy, is_transient, with_retry


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def transient():
    return ProviderOverloadedError(code="PROVIDER_UNAVAILABLE", message="503 overloaded")


@pytest.mark.asyncio
async def test_always_failing_fn_called_exactly_n_times():
    calls = []
    err = transient()

    async def fn():
        calls.append(1)
        raise err

    sleep = FakeSleep()
    with pytest.raises(ProviderOverloadedError) as exc:
        await with_retry(fn, 4, 10, sleep=sleep)
    assert exc.value is err
    assert len(calls) == 4
    assert sleep.calls == [0.01, 0.02, 0.04]


@pytest.mark.asyncio
async def test_success_after_two_transient_failures():
    attempts = {"n": 0}
    retries = []

    async def fn():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise transient()
        return "ok"

    def on_retry(attempt, delay_ms, error):
        retries.append((attempt, delay_ms))

    sleep = FakeSleep()
    result = await with_retry(fn, 3, 1000, on_retry, sleep=sleep)
    assert result == "ok"
    assert retries == [(1, 1000), (2, 2000)]
    assert sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried():
    calls = []

    async def fn():
        calls.append(1)
        raise ApiError(code="API_ERROR", message="bad request")

    with pytest.raises(ApiError):
        await with_retry(fn, 3, 1000, sleep=FakeSleep())
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_single_attempt_is_plain_call():
    calls = []

    async def fn():
        calls.append(1)
        raise transient()

    sleep = FakeSleep()
    with pytest.raises(ProviderOverloadedError):
        await with_retry(fn, 1, 1000, sleep=sleep)
    assert len(calls) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_failing_on_retry_callback_does_not_change_control_flow():
    attempts = {"n": 0}

    async def fn():
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise transient()
        return 7

    def on_retry(*_):
        raise RuntimeError("observer broke")

    assert await with_retry(fn, 3, 5, on_retry, sleep=FakeSleep()) == 7


@pytest.mark.asyncio
async def test_invalid_max_attempts():
    async def fn():
        return 1

    with pytest.raises(ValueError):
        await with_retry(fn, 0, 1000)


@pytest.mark.asyncio
async def test_policy_uses_configured_values():
    sleep = FakeSleep()
    attempts = {"n": 0}

    async def fn():
        attempts["n"] += 1
        if attempts["n"] < 2:
            raise transient()
        return "done"

    assert await RetryPolicy(max_attempts=2, base_delay_ms=3000).run(fn, sleep=sleep) == "done"
    assert sleep.calls == [3.0]


def test_is_transient_message_heuristic():
    assert is_transient(RuntimeError("The model is overloaded. Please try again later."))
    assert is_transient(RuntimeError("got status 503"))
    assert is_transient(RuntimeError("Service Unavailable"))
    assert not is_transient(RuntimeError("invalid argument"))
    assert not is_transient(ApiError(code="API_ERROR", message="503 but flagged fatal"))
