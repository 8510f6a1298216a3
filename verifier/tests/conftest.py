import pytest


@pytest.fixture
def anyio_backend():
    # The code under test and the tests are built on asyncio primitives.
    return "asyncio"
