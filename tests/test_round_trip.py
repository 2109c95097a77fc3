"""Drain from one broker, replay to another: what comes out must be what went in."""
from datetime import datetime, timezone

from mqbackup.models.summary import EXIT_OK, EXIT_PARTIAL
from mqbackup.services.drain import run_drain
from mqbackup.services.replay import run_replay


def test_orders_backup_and_restore(source_server, target_server, source_settings, target_settings, record_path):
    sent = [
        (b'{"order": 1}', {"content_type": "application/json", "delivery_mode": 2, "message_id": "o-1"}),
        (b'{"order": 2}', {"content_type": "application/json", "delivery_mode": 2, "message_id": "o-2"}),
        (b'{"order": 3}', {"content_type": "application/json", "delivery_mode": 2, "message_id": "o-3",
                           "timestamp": datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)}),
    ]
    for body, props in sent:
        source_server.put("orders", body, props)

    drained = run_drain(source_settings, ["orders"], record_path)
    replayed = run_replay(target_settings, record_path)

    assert drained.exit_code == EXIT_OK and replayed.exit_code == EXIT_OK
    assert source_server.depth("orders") == 0
    assert target_server.messages("orders") == sent


def test_binary_payload_is_byte_exact(source_server, target_server, source_settings, target_settings, record_path):
    payload = bytes(range(256)) * 64 + b"\xff\xfe\x00\n"
    source_server.put("blobs", payload, {"headers.sha": b"\x00\x01\x02"})

    run_drain(source_settings, ["blobs"], record_path)
    run_replay(target_settings, record_path)

    assert target_server.messages("blobs") == [(payload, {"headers.sha": b"\x00\x01\x02"})]


def test_multi_queue_order_preserved(source_server, target_server, source_settings, target_settings, record_path):
    for i in range(20):
        source_server.put("a", f"a{i}".encode())
        source_server.put("b", f"b{i}".encode())

    run_drain(source_settings, ["a", "b"], record_path, workers=2)
    run_replay(target_settings, record_path, workers=2)

    assert target_server.bodies("a") == [f"a{i}".encode() for i in range(20)]
    assert target_server.bodies("b") == [f"b{i}".encode() for i in range(20)]


def test_second_drain_appends_to_same_file(source_server, target_server, source_settings, target_settings, record_path):
    source_server.put("orders", b"first")
    run_drain(source_settings, ["orders"], record_path)
    source_server.put("orders", b"second")
    run_drain(source_settings, ["orders"], record_path)

    run_replay(target_settings, record_path)

    assert target_server.bodies("orders") == [b"first", b"second"]


def test_undecodable_source_message_is_not_lost(source_server, target_server, source_settings, target_settings, record_path):
    source_server.put("orders", b"ok")
    source_server.put("orders", b"weird", {"nested": {"not": "scalar"}})

    drained = run_drain(source_settings, ["orders"], record_path)
    run_replay(target_settings, record_path)

    assert drained.exit_code == EXIT_PARTIAL
    assert target_server.bodies("orders") == [b"ok"]
    assert source_server.bodies("orders") == [b"weird"]
