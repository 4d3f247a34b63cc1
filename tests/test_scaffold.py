"""Sanity checks for repository layout and default configuration."""

from pathlib import Path

from config import BACKLOG, FAILURE_POLICY, HOST, IDLE_TIMEOUT_SECS, PORT, RESOURCE_PATH

ROOT = Path(__file__).resolve().parent.parent


def test_core_files_exist() -> None:
    expected = [
        "server.py",
        "io_engine.py",
        "buffers.py",
        "connection.py",
        "registry.py",
        "response.py",
        "metrics.py",
        "config.py",
        "handlers/static_file.py",
        "tools/loadgen.py",
    ]
    for rel_path in expected:
        assert (ROOT / rel_path).exists()


def test_basic_config_values() -> None:
    assert HOST == "127.0.0.1"
    assert PORT == 7878
    assert BACKLOG == 16
    assert FAILURE_POLICY == "isolate"
    assert IDLE_TIMEOUT_SECS is None


def test_default_resource_ships_with_repository() -> None:
    assert (ROOT / RESOURCE_PATH).is_file()
