import pytest

from loyalty.config import PointsConfig
from loyalty.sql_store import SqlLedgerStore
from loyalty.store import InMemoryLedgerStore


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def dispatch(self, notification):
        self.sent.append(notification)


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    """Every store implementation must behave the same."""
    if request.param == "memory":
        yield InMemoryLedgerStore()
    else:
        sql_store = SqlLedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")
        yield sql_store
        sql_store.close()


@pytest.fixture
def config():
    return PointsConfig()


@pytest.fixture
def notifier():
    return RecordingNotifier()
