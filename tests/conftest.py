import asyncio

import pytest

from fakes import standard_world


@pytest.fixture(autouse=True)
def _fresh_event_loop_policy():
    # asyncio.run() in earlier tests leaves the main thread's loop explicitly
    # unset; reset the policy so each test sees a fresh-process asyncio state
    asyncio.set_event_loop_policy(None)
    yield
    asyncio.set_event_loop_policy(None)


@pytest.fixture
def world():
    return standard_world()


@pytest.fixture
def events():
    return []
