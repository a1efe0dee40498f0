import pytest

from strong40.errors import PersistenceFailure
from strong40.retry import is_connection_error, retry_on_transient_failure


@pytest.mark.asyncio
async def test_retries_transient_until_success():
    calls = []

    @retry_on_transient_failure(max_retries=3, delay=0)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise PersistenceFailure("timeout", transient=True)
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    calls = []

    @retry_on_transient_failure(max_retries=2, delay=0)
    async def down():
        calls.append(1)
        raise PersistenceFailure("server closed the connection", transient=True)

    with pytest.raises(PersistenceFailure):
        await down()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_permanent_failure_not_retried():
    calls = []

    @retry_on_transient_failure(max_retries=5, delay=0)
    async def broken():
        calls.append(1)
        raise PersistenceFailure("constraint violated")

    with pytest.raises(PersistenceFailure):
        await broken()
    assert len(calls) == 1


def test_is_connection_error():
    assert is_connection_error(ConnectionResetError("peer reset"))
    assert is_connection_error(RuntimeError("database is locked"))
    assert not is_connection_error(ValueError("bad value"))


@pytest.mark.parametrize("max_retries", [0, -2])
def test_rejects_empty_retry_budget(max_retries):
    with pytest.raises(ValueError):
        retry_on_transient_failure(max_retries=max_retries)
