import pytest

from relay.core.config import settings

from factories import FakeGateway, RecordingStore


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Keep audit records of every test in its own temp file."""
    path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(settings, "AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def gateway():
    return FakeGateway()
