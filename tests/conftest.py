"""Shared fixtures: a fresh store per test, backed by memory."""

import threading

import pytest

from app import create_app
from backends import MemoryBackend
from errors import FlushError
from store import DurableStore
from uploads import LocalUploadStore


class FlakyBackend(MemoryBackend):
    """Rejects every write while `fail` is set."""

    def __init__(self):
        super().__init__()
        self.fail = True

    def put_blob(self, blob):
        if self.fail:
            raise FlushError("remote storage is down")
        super().put_blob(blob)


class StalledBackend(MemoryBackend):
    """Blocks writes until `release` is set."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def put_blob(self, blob):
        self.release.wait(5)
        super().put_blob(blob)


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend):
    s = DurableStore(backend)
    yield s
    s.close(timeout=1)


@pytest.fixture
def uploads(tmp_path):
    return LocalUploadStore(tmp_path / "uploads")


@pytest.fixture
def client(store, uploads):
    app = create_app(store, uploads=uploads)
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def sample_article():
    return {
        "title": "CRISPR screening in malaria vectors",
        "category": "Genetics",
        "description": "A short review",
        "authors": "M. Banda, C. Phiri",
        "institution": "Mukuba University",
        "publicationDate": "2024-05-01",
    }
