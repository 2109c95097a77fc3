import sys
from pathlib import Path
from typing import Iterable, Tuple

import pytest

# Ensure project root on sys.path so 'mqbackup' resolves when running without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from mqbackup.config import BACKOFF_POLICY  # noqa: E402
from mqbackup.integrations import BrokerSettings  # noqa: E402
from mqbackup.integrations.memory import get_server, reset_servers  # noqa: E402
from mqbackup.models.record import Record  # noqa: E402
from mqbackup.services.record_codec import encode_record  # noqa: E402
"""Pytest fixtures and factories.

Brokers are in-process ``memory://`` servers unless a test patches a client
library (redis / pika) with MagicMocks.
"""


@pytest.fixture(autouse=True)
def _isolate_test_state(monkeypatch):
    """Fresh memory brokers per test and no real sleeping between publish retries."""
    reset_servers()
    monkeypatch.setitem(BACKOFF_POLICY, "base_seconds", 0)
    monkeypatch.setitem(BACKOFF_POLICY, "jitter_pct", 0.0)
    yield
    reset_servers()


@pytest.fixture
def source_server():
    return get_server("source")


@pytest.fixture
def target_server():
    return get_server("target")


@pytest.fixture
def source_settings():
    return BrokerSettings.from_url("memory://source")


@pytest.fixture
def target_settings():
    return BrokerSettings.from_url("memory://target")


@pytest.fixture
def record_path(tmp_path):
    return tmp_path / "backup.jsonl"


def write_records(path: Path, records: Iterable[Record], extra_lines: Iterable[Tuple[int, bytes]] = ()) -> None:
    """Write records to ``path``; ``extra_lines`` inserts raw lines before the given 0-based record index."""
    inserts = {}
    for index, raw in extra_lines:
        inserts.setdefault(index, []).append(raw)
    records = list(records)
    with open(path, "wb") as fh:
        for index, record in enumerate(records):
            for raw in inserts.get(index, []):
                fh.write(raw + b"\n")
            fh.write(encode_record(record))
        for raw in inserts.get(len(records), []):
            fh.write(raw + b"\n")


@pytest.fixture
def record_file(record_path):
    """Factory: write records (and optional raw lines) to the test record file."""
    def _write(records, extra_lines=()):
        write_records(record_path, records, extra_lines)
        return record_path
    return _write
