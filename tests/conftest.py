from datetime import datetime, timedelta, timezone

import pytest

from blob_store import BlobStore
from db_store import Store


class TickingClock:
    """Advances one second per reading so created_at values are strictly increasing."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        self.current += self.step
        return self.current


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "data" / "mediwallet.db"


@pytest.fixture
def store(db_path):
    s = Store(db_path, clock=TickingClock())
    yield s
    s.close()


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "documents")
