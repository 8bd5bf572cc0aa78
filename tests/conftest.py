import pytest

from fake_service import FakeService, make_client


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def client(service):
    cli = make_client(service)
    yield cli
    cli.close()
