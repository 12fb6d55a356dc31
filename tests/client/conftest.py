import pytest

from tests.client.fakes import FakeBrowser, FakeServer


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()
