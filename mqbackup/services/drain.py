"""Drain: copy every message of the given queues into a record file.

Single public function ``run_drain`` that:
1. Connects one broker client per worker (a connect failure aborts the run
   before the record file is touched).
2. Hands queues to workers; a queue is always drained by exactly one worker,
   so within-queue order is the file order.
3. Per message: fetch (unacked) -> decode -> durable append -> acknowledge.
   The acknowledgment is never sent before the record is on disk.
4. Undecodable messages are counted as skipped and released back to the
   broker; the queue keeps draining.
5. A lost connection fails only the current queue; the worker reconnects
   and moves on. A failed reconnect aborts the run.
6. Returns a RunSummary (also on fatal errors, with ``fatal_error`` set).
"""
from __future__ import annotations

import queue as std_queue
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from mqbackup.config import DRAIN_SETTINGS
from mqbackup.errors import BrokerConnectionError, ConfigurationError, DecodeError, MqBackupError, QueueNotFoundError
from mqbackup.integrations import Broker, BrokerSettings, create_broker
from mqbackup.jobs import RecordWriter, WorkerPool
from mqbackup.models.record import validate_queue_name
from mqbackup.models.summary import RunSummary
from mqbackup.utils import get_logger, log_run_event

logger = get_logger(__name__)

BrokerFactory = Callable[[BrokerSettings], Broker]


class QueueDrainer:
    """One worker: owns a broker connection, drains whole queues."""

    def __init__(
        self,
        broker: Broker,
        writer: RecordWriter,
        summary: RunSummary,
        stop_event: threading.Event,
        *,
        limit: Optional[int] = None,
    ) -> None:
        self.broker = broker
        self.writer = writer
        self.summary = summary
        self.stop_event = stop_event
        self.limit = limit

    def run(self, work: "std_queue.Queue[str]") -> None:
        while not self.stop_event.is_set():
            try:
                queue = work.get_nowait()
            except std_queue.Empty:
                return
            try:
                self.drain_queue(queue)
            except QueueNotFoundError as e:
                self.summary.fail_queue(queue, str(e))
                logger.error("Queue drain failed", queue=queue, error=str(e))
            except BrokerConnectionError as e:
                self.summary.fail_queue(queue, f"connection lost: {e}")
                logger.error("Connection lost while draining; queue aborted", queue=queue, error=str(e))
                # Unable to reconnect is a per-run failure: propagates to the pool.
                self.broker.reconnect()
                logger.info("Reconnected to source broker", url=self.broker.settings.redacted_url())

    def drain_queue(self, queue: str) -> None:
        stats = self.summary.stats_for(queue)
        self.broker.check_queue(queue)
        self.broker.begin(queue)
        logger.info("Draining queue", queue=queue, limit=self.limit)
        try:
            while not self.stop_event.is_set():
                if self.limit is not None and stats.processed >= self.limit:
                    logger.info("Queue drain limit reached", queue=queue, limit=self.limit)
                    break
                message = self.broker.fetch_next(queue)
                if message is None:
                    break
                try:
                    record = self.broker.decode(message)
                except DecodeError as e:
                    stats.skipped += 1
                    logger.warning("Skipping undecodable message", queue=queue, error=str(e))
                    self.broker.release(message)
                    continue
                self.writer.append(record)
                self.broker.acknowledge(message)
                stats.processed += 1
        finally:
            try:
                self.broker.finish(queue)
            except BrokerConnectionError as e:
                logger.warning("Could not return released messages", queue=queue, error=str(e))
        logger.info("Queue drained", queue=queue, records=stats.processed, skipped=stats.skipped)


def _unique_queues(queues: Iterable[str]) -> List[str]:
    ordered: List[str] = []
    for name in queues:
        try:
            validate_queue_name(name)
        except ValueError as e:
            raise ConfigurationError(f"invalid queue name {name!r}: {e}") from e
        if name not in ordered:
            ordered.append(name)
    return ordered


def run_drain(
    settings: BrokerSettings,
    queues: Iterable[str],
    output: Union[str, Path],
    *,
    limit: Optional[int] = None,
    workers: Optional[int] = None,
    fsync: Optional[bool] = None,
    stop_event: Optional[threading.Event] = None,
    broker_factory: BrokerFactory = create_broker,
) -> RunSummary:
    summary = RunSummary(operation="drain")
    stop_event = stop_event or threading.Event()
    fsync = bool(DRAIN_SETTINGS["fsync"]) if fsync is None else fsync
    worker_count = int(workers if workers is not None else DRAIN_SETTINGS["workers"])

    try:
        queue_names = _unique_queues(queues)
        if limit is not None and limit < 0:
            raise ConfigurationError("limit must not be negative")
    except ConfigurationError as e:
        summary.fatal_error = str(e)
        return summary.finish()
    worker_count = max(1, min(worker_count, len(queue_names) or 1))

    log_run_event("run_started", "drain", url=settings.redacted_url(), queues=queue_names, output=str(output), workers=worker_count)

    brokers: List[Broker] = []
    writer: Optional[RecordWriter] = None
    try:
        for _ in range(worker_count):
            broker = broker_factory(settings)
            broker.connect()
            brokers.append(broker)
        writer = RecordWriter(output, fsync=fsync)

        work: "std_queue.Queue[str]" = std_queue.Queue()
        for name in queue_names:
            work.put(name)

        pool = WorkerPool("drain", stop_event)
        for broker in brokers:
            pool.spawn(QueueDrainer(broker, writer, summary, stop_event, limit=limit).run, work)
        pool.join()
        # A stop requested by the caller counts as an interrupt unless a worker failed.
        summary.interrupted = pool.interrupted or (pool.fatal is None and stop_event.is_set())
        if pool.fatal is not None:
            summary.fatal_error = str(pool.fatal)
    except (MqBackupError, OSError) as e:
        summary.fatal_error = str(e)
        logger.error("Drain aborted", error=str(e), error_type=type(e).__name__)
    except KeyboardInterrupt:
        summary.interrupted = True
    finally:
        for broker in brokers:
            broker.close()
        if writer is not None:
            writer.close()

    summary.finish()
    log_run_event("run_finished", "drain", **summary.log_fields())
    return summary


__all__ = ["run_drain", "QueueDrainer"]
