"""Pytest configuration and shared fixtures."""

import shutil
import stat
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from fakes import FakeExecutor, InMemoryStore, fake_fio_script
from orchestrator.config import Settings, StorageSettings
from orchestrator.registry import Registry
from orchestrator.storage.metrics_store import MetricsStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def raw_targets() -> list[dict]:
    """Target definitions as they appear under storage.targets."""
    return [
        {
            "name": "nvme_direct",
            "path": "/dev/nvme0n1",
            "type": "block_device",
            "options": {"scheduler": "none", "numa_node": "0"},
        },
        {
            "name": "dm_volume",
            "path": "/dev/dm-0",
            "type": "device_mapper",
            "options": {"dm_name": "data-volume"},
        },
        {
            "name": "xfs_mount",
            "path": "/mnt/data",
            "type": "filesystem",
            "options": {"fs_type": "xfs", "mount_options": "noatime"},
        },
    ]


@pytest.fixture
def raw_profiles() -> dict:
    """Profile definitions as they appear under storage.fio.profiles."""
    return {
        "block_device_test": {
            "description": "Block device performance test",
            "ioengine": "io_uring",
            "rw": "randrw",
            "rwmixread": 70,
            "bs": "4k,128k",
            "size": "10G",
            "numjobs": 4,
            "iodepth": 64,
            "direct": True,
        },
        "filesystem_test": {
            "ioengine": "libaio",
            "rw": "randrw",
            "rwmixread": 70,
            "bs": "16k",
            "size": "1G",
            "numjobs": 8,
            "iodepth": 32,
            "direct": True,
            "buffered": False,
            "verify": "md5",
        },
        "quick_read": {
            "rw": "randread",
            "bs": "4k",
            "size": "64M",
            "runtime": 5,
        },
        "broken_device": {
            "rw": "randwrite",
            "bs": "1M",
            "size": "5G",
        },
    }


@pytest.fixture
def registry(raw_targets, raw_profiles) -> Registry:
    """Validated registry built from the sample definitions."""
    return Registry.validate(raw_targets, raw_profiles)


@pytest.fixture
def metrics_store(temp_dir: Path) -> MetricsStore:
    """Create a MetricsStore in a temporary directory."""
    return MetricsStore(temp_dir / "db" / "sysperf.db")


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def storage_settings() -> StorageSettings:
    """Scheduler settings with short timings."""
    return StorageSettings(
        max_concurrent_tests=2,
        default_timeout=30,
        grace_margin=5,
        kill_grace_period=1,
        store_retry_backoff=0,
    )


@pytest.fixture
def fake_fio(temp_dir: Path, monkeypatch) -> Path:
    """Executable shell script that prints fio-like output."""
    monkeypatch.delenv("FAKE_FIO_MODE", raising=False)
    path = temp_dir / "bin" / "fio"
    path.parent.mkdir(parents=True)
    path.write_text(fake_fio_script())
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def settings(temp_dir: Path, raw_targets, raw_profiles, fake_fio) -> Settings:
    """Full settings pointing at the fake fio binary."""
    return Settings(
        general={
            "log_directory": temp_dir / "logs",
            "log_level": "DEBUG",
            "database_path": temp_dir / "db" / "sysperf.db",
        },
        storage={
            "test_directory": temp_dir / "storage_tests",
            "max_concurrent_tests": 2,
            "default_timeout": 30,
            "grace_margin": 5,
            "kill_grace_period": 1,
            "store_retry_backoff": 0,
            "retention_days": 30,
            "targets": raw_targets,
            "fio": {
                "binary": str(fake_fio),
                "profiles": raw_profiles,
                "defaults": {"runtime": 1, "time_based": True, "group_reporting": True, "status_interval": 1},
            },
        },
    )
