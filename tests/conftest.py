import pytest

from fakes import FakeScheduler, ManualClock


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return FakeScheduler(clock)
