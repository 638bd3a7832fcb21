import pytest

from ledger.service import build_service

from .support import FakeClock, make_settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return build_service(make_settings(), clock=clock)
