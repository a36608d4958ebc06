import pytest

from greenhouse_gateway.utils.retry import async_retry_with_backoff


def flaky(errors, result="token"):
    calls = []

    async def login():
        calls.append(1)
        if errors:
            raise errors.pop(0)
        return result

    return login, calls


@pytest.mark.asyncio
async def test_retries_listed_errors_until_success():
    login, calls = flaky([ConnectionError("refused"), ConnectionError("refused")])
    wrapped = async_retry_with_backoff(max_retries=2, base_delay=0, exceptions=(ConnectionError,))(login)

    assert await wrapped() == "token"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    login, calls = flaky([ConnectionError("refused")] * 3)
    wrapped = async_retry_with_backoff(max_retries=1, base_delay=0, exceptions=(ConnectionError,))(login)

    with pytest.raises(ConnectionError):
        await wrapped()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    login, calls = flaky([ValueError("bad credentials")])
    wrapped = async_retry_with_backoff(max_retries=3, base_delay=0, exceptions=(ConnectionError,))(login)

    with pytest.raises(ValueError):
        await wrapped()
    assert len(calls) == 1
