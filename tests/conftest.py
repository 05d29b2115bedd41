"""Root pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from src.local.supervisor.startup import PipelineOptions
from src.log.setup import detach_process_logs
from tests.helpers import FAKE_INITDB, FAKE_LISTMONK, FAKE_POSTGRES, write_script


@pytest.fixture
def fake_bin(tmp_path) -> Path:
    """A directory with fake initdb, postgres and listmonk binaries."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    write_script(bin_dir / "initdb", FAKE_INITDB)
    write_script(bin_dir / "postgres", FAKE_POSTGRES)
    write_script(bin_dir / "listmonk", FAKE_LISTMONK)
    (bin_dir / "config.toml").write_text("[app]\n")
    return bin_dir


@pytest.fixture
def pipeline_options(tmp_path, fake_bin) -> PipelineOptions:
    return PipelineOptions(
        data_dir=tmp_path / "data" / "listmonk-db",
        postgres_path=fake_bin / "postgres",
        initdb_path=fake_bin / "initdb",
        listmonk_path=fake_bin / "listmonk",
        listmonk_config_path=fake_bin / "config.toml",
        database_ready_timeout=15,
        application_ready_timeout=15,
    )


@pytest.fixture(autouse=True)
def _reset_process_logs():
    """Per-role log sinks are process-global; drop them between tests."""
    yield
    detach_process_logs()
