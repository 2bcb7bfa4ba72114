import pytest

from tictify import camera, timings
from tictify.api import TictifyClient
from tests.helpers import BASE, Backend


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def client_for(backend):
    """Build a TictifyClient wired to the scripted backend."""
    def make(session=None):
        return TictifyClient(BASE, session=session,
                             transport=backend.transport)
    return make


@pytest.fixture(autouse=True)
def _fresh_process_state():
    camera._ACTIVE = None
    timings.reset()
    yield
    camera._ACTIVE = None
