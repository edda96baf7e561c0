import pytest
from unittest.mock import AsyncMock, MagicMock

import klipper_overlay
from tests.fakes import FakeSession


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def get_session(fake_session):
    async def _get_session():
        return fake_session

    return _get_session


@pytest.fixture
def moonraker(get_session):
    return klipper_overlay.MoonrakerClient("http://printer.local:7125", get_session)


@pytest.fixture
def mock_client():
    """A MoonrakerClient double with no metadata for any file."""
    client = MagicMock(spec=klipper_overlay.MoonrakerClient)
    client.query_objects = AsyncMock()
    client.file_metadata = AsyncMock(return_value=None)
    return client
