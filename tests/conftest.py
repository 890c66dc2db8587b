import pytest

from cloudflare_ddns.cli import Zone

from fakes import MockRecordStore


@pytest.fixture
def zone() -> Zone:
    return Zone(name="example.com", id="zone-1")


@pytest.fixture
def store() -> MockRecordStore:
    return MockRecordStore()
