import pytest

from mqbackup.errors import ConfigurationError
from mqbackup.models import QueueSpec, Record, RunSummary, parse_queue_spec
from mqbackup.models.summary import EXIT_FATAL, EXIT_INTERRUPTED, EXIT_OK, EXIT_PARTIAL


def test_record_is_immutable_and_normalized():
    record = Record(queue="orders", body=bytearray(b"abc"), properties={"priority": 1})
    assert record.body == b"abc" and isinstance(record.body, bytes)
    with pytest.raises(TypeError):
        record.properties["priority"] = 2  # type: ignore[index]
    with pytest.raises(AttributeError):
        record.queue = "other"  # type: ignore[misc]


@pytest.mark.parametrize("queue", ["", "x" * 256, "é" * 128])
def test_record_rejects_bad_queue_names(queue):
    with pytest.raises(ValueError):
        Record(queue=queue, body=b"")


def test_record_rejects_text_body():
    with pytest.raises(TypeError):
        Record(queue="q", body="text")  # type: ignore[arg-type]


def test_parse_queue_spec_flags():
    assert parse_queue_spec("orders") == QueueSpec("orders", durable=True, auto_delete=False)
    assert parse_queue_spec("orders", default_durable=False) == QueueSpec("orders", durable=False)
    assert parse_queue_spec("tmp:transient,auto_delete") == QueueSpec("tmp", durable=False, auto_delete=True)
    assert parse_queue_spec("jobs:durable,auto-delete").auto_delete is True


@pytest.mark.parametrize("text", [":durable", "orders:durable,transient", "orders:exclusive"])
def test_parse_queue_spec_rejects(text):
    with pytest.raises(ConfigurationError):
        parse_queue_spec(text)


def test_queue_spec_conflicts_and_describe():
    durable = QueueSpec("orders")
    transient = QueueSpec("orders", durable=False, auto_delete=True)
    assert durable.conflicts_with(transient)
    assert not durable.conflicts_with(QueueSpec("orders"))
    assert not durable.conflicts_with(QueueSpec("other", durable=False))
    assert transient.describe() == "orders:transient,auto_delete"


def test_summary_exit_codes():
    summary = RunSummary(operation="drain")
    summary.stats_for("orders").processed = 3
    assert summary.exit_code == EXIT_OK

    summary.record_malformed(4)
    assert summary.skipped == 1
    assert summary.exit_code == EXIT_PARTIAL

    summary.interrupted = True
    assert summary.exit_code == EXIT_INTERRUPTED

    summary.fatal_error = "connection refused"
    assert summary.exit_code == EXIT_FATAL


def test_summary_render_and_dict():
    summary = RunSummary(operation="replay")
    summary.stats_for("orders").processed = 2
    summary.stats_for("invoices").failed = 1
    summary.fail_queue("ghost", "queue 'ghost' not found")
    summary.finish()

    text = summary.render()
    assert text.startswith("replay summary: processed=2 skipped=0 failed=1")
    assert "ghost" in text and "not found" in text

    data = summary.to_dict()
    assert data["failed_queues"] == ["ghost"]
    assert data["exit_code"] == EXIT_PARTIAL
    assert data["queues"]["orders"]["processed"] == 2
