import pytest

from core.config import BooksConfig
from helpers import REMOTE_URL, SENDER, TODAY, FakeRemote, RecordingTransport, write_settings
from tools.cbsbooks.dispatch import EmailDispatcher
from tools.cbsbooks.service import InvoiceService
from tools.cbsbooks.sync import LocalCache, RemoteStore, SyncContext


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def config(tmp_path):
    return BooksConfig(config_path=write_settings(tmp_path))


@pytest.fixture
async def context(tmp_path, remote):
    client = remote.client()
    ctx = SyncContext(remote=RemoteStore(REMOTE_URL, client=client),
                      cache=LocalCache(tmp_path / "cache"))
    yield ctx
    await client.aclose()


@pytest.fixture
async def service(context, transport):
    svc = InvoiceService(
        context,
        sender=SENDER,
        dispatcher=EmailDispatcher(transport),
        today=lambda: TODAY,
    )
    yield svc
    await svc.close()
