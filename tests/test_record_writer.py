import threading
from unittest.mock import patch

import pytest

from mqbackup.jobs import RecordWriter
from mqbackup.models.record import Record
from mqbackup.services.record_codec import read_records


def test_append_writes_complete_lines(record_path):
    with RecordWriter(record_path) as writer:
        writer.append(Record(queue="orders", body=b"one"))
        writer.append(Record(queue="orders", body=b"two"))
        assert writer.records_written == 2
    assert writer.closed
    assert [r.body for _, r in read_records(record_path)] == [b"one", b"two"]


def test_existing_file_is_appended_not_truncated(record_path):
    with RecordWriter(record_path) as writer:
        writer.append(Record(queue="orders", body=b"first run"))
    with RecordWriter(record_path) as writer:
        writer.append(Record(queue="orders", body=b"second run"))
    assert [r.body for _, r in read_records(record_path)] == [b"first run", b"second run"]


def test_partial_trailing_line_is_isolated(record_path):
    with RecordWriter(record_path) as writer:
        writer.append(Record(queue="orders", body=b"kept"))
    with open(record_path, "ab") as fh:
        fh.write(b'{"v":1,"queue":"orders","bo')  # crash mid-write
    with RecordWriter(record_path) as writer:
        writer.append(Record(queue="orders", body=b"after crash"))

    malformed = []
    bodies = [r.body for _, r in read_records(record_path, on_error=lambda n, e: malformed.append(n))]
    assert bodies == [b"kept", b"after crash"]
    assert malformed == [2]


def test_fsync_per_record_unless_disabled(record_path):
    with patch("mqbackup.jobs.record_writer.os.fsync") as fsync:
        writer = RecordWriter(record_path, fsync=True)
        writer.append(Record(queue="q", body=b"a"))
        writer.append(Record(queue="q", body=b"b"))
        assert fsync.call_count == 2
        writer.close()

    with patch("mqbackup.jobs.record_writer.os.fsync") as fsync:
        with RecordWriter(record_path, fsync=False) as writer:
            writer.append(Record(queue="q", body=b"c"))
        fsync.assert_not_called()


def test_append_after_close_raises(record_path):
    writer = RecordWriter(record_path)
    writer.close()
    writer.close()
    with pytest.raises(ValueError):
        writer.append(Record(queue="q", body=b"late"))


def test_concurrent_appends_never_interleave(record_path):
    writer = RecordWriter(record_path, fsync=False)

    def produce(queue):
        for i in range(50):
            writer.append(Record(queue=queue, body=f"{queue}-{i}".encode() * 20))

    threads = [threading.Thread(target=produce, args=(f"q{n}",)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    writer.close()

    malformed = []
    records = [r for _, r in read_records(record_path, on_error=lambda n, e: malformed.append(n))]
    assert not malformed
    assert len(records) == 200
    for n in range(4):
        bodies = [r.body for r in records if r.queue == f"q{n}"]
        assert bodies == [f"q{n}-{i}".encode() * 20 for i in range(50)]


def test_parent_directory_is_created(tmp_path):
    path = tmp_path / "nested" / "dir" / "backup.jsonl"
    with RecordWriter(path) as writer:
        writer.append(Record(queue="q", body=b"x"))
    assert path.exists()
