import pytest
from pytest_socket import disable_socket


def pytest_runtest_setup():
    """
    Runs before every test.
    We disable network access. Tibber, InfluxDB and every other upstream
    must be mocked; a real connection attempt raises SocketBlockedError.
    Unix sockets stay allowed for the asyncio event loop.
    """
    disable_socket(allow_unix_socket=True)


class FakeClock:
    """Monotonic clock stand-in that only moves when a test moves it"""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()
