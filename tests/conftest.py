"""Shared fixtures: a source root, a vault, a fake converter and a stepping clock."""

import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from docmirror.config import LoggingConfig, SyncConfig
from docmirror.engine import ReconciliationEngine
from docmirror.exceptions import ConversionError
from docmirror.gateway import ConversionGateway
from docmirror.models import MonitoredRoot
from docmirror.suppression import RecentMoveCache


class FakeGateway(ConversionGateway):
    """Writes "converted:<file name>" plus the source bytes as text."""

    def __init__(self, fail_times: int = 0, fail_always: bool = False, delay: float = 0.0):
        self.fail_times = fail_times
        self.fail_always = fail_always
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def convert(self, source_path: Path, destination_path: Path) -> None:
        with self._lock:
            self.calls.append(Path(source_path))
            attempt = len(self.calls)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_always or attempt <= self.fail_times:
            raise ConversionError(f"cannot parse {Path(source_path).name}")
        text = Path(source_path).read_text(encoding="utf-8", errors="replace")
        Path(destination_path).write_text(f"converted:{Path(source_path).name}\n{text}", encoding="utf-8")


class StepClock:
    """UTC wall clock advancing one second per call."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


class ManualClock:
    """Monotonic seconds that only move when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def source_root(tmp_path) -> MonitoredRoot:
    path = tmp_path / "source"
    path.mkdir()
    return MonitoredRoot(path=path, alias="docs")


@pytest.fixture
def vault(tmp_path) -> Path:
    path = tmp_path / "vault"
    path.mkdir()
    return path


@pytest.fixture
def config(source_root, vault) -> SyncConfig:
    return SyncConfig(
        roots=[source_root],
        vault_path=vault,
        output_folder="Mirror",
        max_retries=0,
        retry_delay_seconds=0.0,
        conversion_timeout_seconds=5.0,
        debounce_ms=20,
        flush_interval_ms=20,
        logging=LoggingConfig(enabled=False),
    )


@pytest.fixture
def dest_root(vault) -> Path:
    return (vault / "Mirror").resolve()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def move_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def notices():
    return []


@pytest.fixture
def engine(config, gateway, move_clock, notices):
    engine = ReconciliationEngine(
        config,
        gateway,
        move_cache=RecentMoveCache(ttl_seconds=15.0, clock=move_clock),
        notifier=notices.append,
        clock=StepClock(),
        sleep=lambda seconds: None,
    )
    yield engine
    engine.close()
