import pytest

from backend import MemorySessionBackend
from hub import SessionHub
from registry import SessionRegistry
from rendezvous import Connection


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def registry():
    return SessionRegistry(MemorySessionBackend(), render_qr=False)


@pytest.fixture
def hub(registry):
    return SessionHub(registry, max_file_size=1024 * 1024)


@pytest.fixture
def make_connection():
    counter = iter(range(1000))

    def _make(device="web"):
        return Connection(connection_id=f"conn-{next(counter)}", device=device)

    return _make


@pytest.fixture
def drain():
    """Pop every queued outbound message from a connection."""

    def _drain(connection):
        messages = []
        while not connection.outbox.empty():
            message = connection.outbox.get_nowait()
            if message is not None:
                messages.append(message)
        return messages

    return _drain