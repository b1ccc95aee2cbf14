import pytest

from factories import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
