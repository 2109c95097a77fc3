"""Replay: republish a record file to a target broker.

Single public function ``run_replay`` that:
1. Resolves queue declarations (operator-declared + on-the-fly defaults for
   every queue in the file) and declares them all before publishing anything;
   conflicting flags abort the run with a ConfigurationError.
2. Publishes records in file order; with several workers, records are
   partitioned by destination queue so each queue keeps file order.
3. Retries a failed publish with exponential backoff, reconnecting if the
   connection dropped. Exhausted retries count the record as failed (or abort
   the run in fail-fast mode).
4. Skips and counts malformed lines.

No deduplication is attempted: replaying the same file twice publishes every
message twice.
"""
from __future__ import annotations

import queue as std_queue
import threading
import time
import zlib
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from mqbackup.config import REPLAY_SETTINGS
from mqbackup.errors import BrokerConnectionError, ConfigurationError, MqBackupError, PublishError
from mqbackup.integrations import Broker, BrokerSettings, create_broker
from mqbackup.jobs import WorkerPool
from mqbackup.models.record import QueueSpec, Record
from mqbackup.models.summary import RunSummary
from mqbackup.services.record_codec import read_records, scan_queues
from mqbackup.utils import get_logger, log_run_event
from mqbackup.utils.backoff import compute_backoff_seconds, max_attempts as resolve_max_attempts

logger = get_logger(__name__)

BrokerFactory = Callable[[BrokerSettings], Broker]
WorkItem = Optional[Tuple[int, Record]]


def resolve_declarations(
    declarations: Iterable[QueueSpec],
    file_queues: Iterable[str],
    *,
    default_durable: bool,
    default_auto_delete: bool,
) -> List[QueueSpec]:
    """Operator declarations first, then defaults for undeclared file queues."""
    specs: Dict[str, QueueSpec] = {}
    for spec in declarations:
        existing = specs.get(spec.name)
        if existing is not None and existing.conflicts_with(spec):
            raise ConfigurationError(
                f"queue '{spec.name}' declared twice with conflicting flags: "
                f"{existing.describe()} vs {spec.describe()}",
                queue=spec.name,
            )
        specs[spec.name] = spec
    for name in file_queues:
        specs.setdefault(name, QueueSpec(name=name, durable=default_durable, auto_delete=default_auto_delete))
    return list(specs.values())


class Pacer:
    """Spaces calls ``interval`` seconds apart (no-op when interval is 0)."""

    def __init__(self, interval: float) -> None:
        self.interval = max(interval, 0.0)
        self._last: Optional[float] = None

    def wait(self, stop_event: threading.Event) -> None:
        if not self.interval:
            return
        now = time.perf_counter()
        if self._last is not None:
            remaining = self.interval - (now - self._last)
            if remaining > 0:
                stop_event.wait(remaining)
        self._last = time.perf_counter()


class RecordPublisher:
    """One worker: owns a broker connection, publishes records with retry."""

    def __init__(
        self,
        broker: Broker,
        summary: RunSummary,
        stop_event: threading.Event,
        *,
        fail_fast: bool = False,
        queue_map: Optional[Mapping[str, str]] = None,
        strip_properties: Iterable[str] = (),
        attempts: int = 1,
        pacer: Optional[Pacer] = None,
    ) -> None:
        self.broker = broker
        self.summary = summary
        self.stop_event = stop_event
        self.fail_fast = fail_fast
        self.queue_map = dict(queue_map or {})
        self.strip_properties = frozenset(strip_properties)
        self.attempts = attempts
        self.pacer = pacer or Pacer(0)

    def destination(self, record: Record) -> str:
        return self.queue_map.get(record.queue, record.queue)

    def publish(self, line_no: int, record: Record) -> bool:
        """Publish one record; True on success. Raises only for run-fatal errors."""
        queue = self.destination(record)
        stats = self.summary.stats_for(queue)
        properties = {k: v for k, v in record.properties.items() if k not in self.strip_properties}
        self.pacer.wait(self.stop_event)

        last_error: Optional[MqBackupError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                self.broker.publish(queue, record.body, properties)
                stats.processed += 1
                return True
            except PublishError as e:
                last_error = e
            except BrokerConnectionError as e:
                last_error = e
                logger.warning("Connection lost while publishing; reconnecting", queue=queue, line_no=line_no, error=str(e))
                self.broker.reconnect()
            if attempt < self.attempts:
                delay = compute_backoff_seconds(attempt)
                logger.debug("Retrying publish", queue=queue, line_no=line_no, attempt=attempt, delay=round(delay, 3))
                if self.stop_event.wait(delay):
                    break

        stats.failed += 1
        logger.error("Publish failed; record not replayed", queue=queue, line_no=line_no, attempts=self.attempts, error=str(last_error))
        if self.fail_fast:
            raise PublishError(f"line {line_no}: publish to '{queue}' failed: {last_error}", queue=queue) from last_error
        return False

    def run_file(self, path: Path) -> None:
        for line_no, record in read_records(path, on_error=lambda n, _e: self.summary.record_malformed(n)):
            if self.stop_event.is_set():
                return
            self.publish(line_no, record)

    def run_feed(self, feed: "std_queue.Queue[WorkItem]") -> None:
        while not self.stop_event.is_set():
            try:
                item = feed.get(timeout=0.2)
            except std_queue.Empty:
                continue
            if item is None:
                return
            self.publish(*item)


def _partition(queue: str, workers: int) -> int:
    return zlib.crc32(queue.encode("utf-8")) % workers


def _feed(
    path: Path,
    feeds: List["std_queue.Queue[WorkItem]"],
    publishers: List[RecordPublisher],
    summary: RunSummary,
    stop_event: threading.Event,
) -> None:
    def put(feed: "std_queue.Queue[WorkItem]", item: WorkItem) -> bool:
        while not stop_event.is_set():
            try:
                feed.put(item, timeout=0.2)
                return True
            except std_queue.Full:
                continue
        return False

    try:
        for line_no, record in read_records(path, on_error=lambda n, _e: summary.record_malformed(n)):
            if stop_event.is_set():
                break
            index = _partition(publishers[0].destination(record), len(feeds))
            if not put(feeds[index], (line_no, record)):
                break
    finally:
        for feed in feeds:
            put(feed, None)


def run_replay(
    settings: BrokerSettings,
    input_path: Union[str, Path],
    *,
    declarations: Iterable[QueueSpec] = (),
    fail_fast: Optional[bool] = None,
    queue_map: Optional[Mapping[str, str]] = None,
    strip_properties: Iterable[str] = (),
    workers: Optional[int] = None,
    rps: Optional[float] = None,
    max_attempts: Optional[int] = None,
    stop_event: Optional[threading.Event] = None,
    broker_factory: BrokerFactory = create_broker,
) -> RunSummary:
    summary = RunSummary(operation="replay")
    stop_event = stop_event or threading.Event()
    path = Path(input_path)
    fail_fast = bool(REPLAY_SETTINGS["fail_fast"]) if fail_fast is None else fail_fast
    worker_count = max(1, int(workers if workers is not None else REPLAY_SETTINGS["workers"]))
    rate = float(rps if rps is not None else REPLAY_SETTINGS["rps"])
    attempts = resolve_max_attempts(max_attempts)
    queue_map = dict(queue_map or {})
    strip = list(strip_properties)

    log_run_event("run_started", "replay", url=settings.redacted_url(), input=str(path), workers=worker_count, fail_fast=fail_fast)

    brokers: List[Broker] = []
    try:
        file_queues = [queue_map.get(q, q) for q in scan_queues(path)]
        specs = resolve_declarations(
            declarations,
            file_queues,
            default_durable=bool(REPLAY_SETTINGS["default_durable"]),
            default_auto_delete=bool(REPLAY_SETTINGS["default_auto_delete"]),
        )

        for _ in range(worker_count):
            broker = broker_factory(settings)
            broker.connect()
            brokers.append(broker)

        for spec in specs:
            brokers[0].declare_queue(spec)
        logger.info("Queues declared", count=len(specs), queues=[s.describe() for s in specs])

        # With N workers each one gets 1/N of the overall rate.
        interval = (worker_count / rate) if rate > 0 else 0.0
        publishers = [
            RecordPublisher(
                broker,
                summary,
                stop_event,
                fail_fast=fail_fast,
                queue_map=queue_map,
                strip_properties=strip,
                attempts=attempts,
                pacer=Pacer(interval),
            )
            for broker in brokers
        ]

        pool = WorkerPool("replay", stop_event)
        if worker_count == 1:
            pool.spawn(publishers[0].run_file, path)
        else:
            size = int(REPLAY_SETTINGS["feed_queue_size"])
            feeds: List["std_queue.Queue[WorkItem]"] = [std_queue.Queue(maxsize=size) for _ in publishers]
            for publisher, feed in zip(publishers, feeds):
                pool.spawn(publisher.run_feed, feed)
            try:
                _feed(path, feeds, publishers, summary, stop_event)
            except KeyboardInterrupt:
                pool.interrupt()
            except OSError as e:
                pool.fail(e)
        pool.join()
        # A stop requested by the caller counts as an interrupt unless a worker failed.
        summary.interrupted = pool.interrupted or (pool.fatal is None and stop_event.is_set())
        if pool.fatal is not None:
            summary.fatal_error = str(pool.fatal)
    except (MqBackupError, OSError) as e:
        summary.fatal_error = str(e)
        logger.error("Replay aborted", error=str(e), error_type=type(e).__name__)
    except KeyboardInterrupt:
        summary.interrupted = True
    finally:
        for broker in brokers:
            broker.close()

    summary.finish()
    log_run_event("run_finished", "replay", **summary.log_fields())
    return summary


__all__ = ["run_replay", "resolve_declarations", "RecordPublisher", "Pacer"]
