"""
Pytest configuration for offsync tests.

Time is virtual everywhere: components get a ManualClock whose ``sleep``
advances instantly and records the requested delay.
"""

import os
from typing import Any

import pytest

from offsync.core.clock import ManualClock
from offsync.core.config import Settings, reset_settings
from offsync.resilience.error_log import ErrorLog
from offsync.resilience.executor import ResilientExecutor, RetryPolicy
from offsync.storage.memory import MemoryStore


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow (deselect with '-m \"not slow\"')"
    )


class FlakyStore(MemoryStore):
    """MemoryStore whose operations can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False
        self.set_calls = 0

    async def get(self, key: str) -> bytes | None:
        if self.fail_get:
            raise OSError("store unavailable (get)")
        return await super().get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.set_calls += 1
        if self.fail_set:
            raise OSError("store unavailable (set)")
        await super().set(key, value)

    async def delete(self, key: str) -> None:
        if self.fail_delete:
            raise OSError("store unavailable (delete)")
        await super().delete(key)

    def fail_all(self, failing: bool = True) -> None:
        self.fail_get = self.fail_set = self.fail_delete = failing


class RecordingUploader:
    """
    RemoteUploader fake.

    ``failures`` maps a record id to how many upload calls for it fail
    before succeeding; ``-1`` fails forever.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.failures: dict[str, int] = {}
        self.fail_everything = False

    def _maybe_fail(self, record_id: str) -> None:
        if self.fail_everything:
            raise ConnectionError("remote unavailable")
        remaining = self.failures.get(record_id, 0)
        if remaining == -1:
            raise ConnectionError(f"upload rejected for {record_id}")
        if remaining > 0:
            self.failures[record_id] = remaining - 1
            raise ConnectionError(f"transient failure for {record_id}")

    async def _upload(self, kind: str, record_id: str, payload: Any) -> None:
        self.calls.append((kind, record_id, payload))
        self._maybe_fail(record_id)

    async def upload_inventory(self, record_id: str, payload: Any) -> None:
        await self._upload("inventory", record_id, payload)

    async def upload_prediction(self, record_id: str, payload: Any) -> None:
        await self._upload("prediction", record_id, payload)

    async def upload_sale(self, record_id: str, payload: Any) -> None:
        await self._upload("sale", record_id, payload)

    async def upload_waste(self, record_id: str, payload: Any) -> None:
        await self._upload("waste", record_id, payload)

    def ids(self) -> list[str]:
        return [record_id for _, record_id, _ in self.calls]


class FakeProbe:
    """Connectivity probe replaying scripted answers; the last one repeats."""

    def __init__(self, *answers: bool) -> None:
        self.answers = list(answers) or [True]
        self.calls = 0

    async def is_online(self) -> bool:
        self.calls += 1
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0]


class SequenceIds:
    """Deterministic id factory: rec-1, rec-2, ..."""

    def __init__(self) -> None:
        self.n = 0

    def __call__(self) -> str:
        self.n += 1
        return f"rec-{self.n}"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep tests away from real config files and OFFSYNC_* variables."""
    for key in list(os.environ):
        if key.startswith("OFFSYNC_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def error_log(clock):
    return ErrorLog(capacity=50, clock=clock)


@pytest.fixture
def executor(clock, error_log):
    return ResilientExecutor(
        clock=clock,
        error_log=error_log,
        default_policy=RetryPolicy(max_attempts=3, base_delay=1.0),
        network_policy=RetryPolicy(max_attempts=2, base_delay=2.0),
        operation_timeout=10.0,
    )


@pytest.fixture
def uploader():
    return RecordingUploader()


@pytest.fixture
def probe():
    return FakeProbe(True)


@pytest.fixture
def probe_factory():
    return FakeProbe


@pytest.fixture
def ids():
    return SequenceIds()


@pytest.fixture
def settings(tmp_path):
    return Settings(store_backend="memory", data_dir=tmp_path / "data")
