"""Run counters shared by drain and replay.

Each queue's stats are only ever touched by the one worker that owns the
queue; the lock only guards creation of new entries and run-level fields.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from mqbackup.utils.time import elapsed_seconds, format_elapsed, format_rate, utc_now

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


@dataclass
class QueueStats:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None  # queue-level failure (missing queue, lost connection)


@dataclass
class RunSummary:
    operation: str
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    queues: dict[str, QueueStats] = field(default_factory=dict)
    malformed_lines: list[int] = field(default_factory=list)
    interrupted: bool = False
    fatal_error: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def stats_for(self, queue: str) -> QueueStats:
        with self._lock:
            return self.queues.setdefault(queue, QueueStats())

    def record_malformed(self, line_no: int) -> None:
        with self._lock:
            self.malformed_lines.append(line_no)

    def fail_queue(self, queue: str, reason: str) -> None:
        self.stats_for(queue).error = reason

    def finish(self) -> "RunSummary":
        self.finished_at = utc_now()
        return self

    @property
    def processed(self) -> int:
        return sum(s.processed for s in self.queues.values())

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.queues.values()) + len(self.malformed_lines)

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.queues.values())

    @property
    def failed_queues(self) -> list[str]:
        return [name for name, s in self.queues.items() if s.error]

    @property
    def exit_code(self) -> int:
        if self.fatal_error:
            return EXIT_FATAL
        if self.interrupted:
            return EXIT_INTERRUPTED
        if self.skipped or self.failed or self.failed_queues:
            return EXIT_PARTIAL
        return EXIT_OK

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_queues": self.failed_queues,
            "malformed_lines": list(self.malformed_lines),
            "interrupted": self.interrupted,
            "fatal_error": self.fatal_error,
            "exit_code": self.exit_code,
            "elapsed_seconds": round(elapsed_seconds(self.started_at, self.finished_at), 3),
            "queues": {
                name: {"processed": s.processed, "skipped": s.skipped, "failed": s.failed, "error": s.error}
                for name, s in self.queues.items()
            },
        }

    def log_fields(self) -> dict:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_queues": self.failed_queues or None,
            "interrupted": self.interrupted or None,
            "fatal_error": self.fatal_error,
        }

    def render(self) -> str:
        elapsed = format_elapsed(self.started_at, self.finished_at)
        rate = format_rate(self.processed, self.started_at, self.finished_at)
        lines = [
            f"{self.operation} summary: processed={self.processed} skipped={self.skipped} "
            f"failed={self.failed} elapsed={elapsed} rate={rate}"
        ]
        for name, s in self.queues.items():
            line = f"  {name}: processed={s.processed} skipped={s.skipped} failed={s.failed}"
            if s.error:
                line += f" error={s.error}"
            lines.append(line)
        if self.malformed_lines:
            shown = ", ".join(str(n) for n in self.malformed_lines[:20])
            more = "" if len(self.malformed_lines) <= 20 else f" (+{len(self.malformed_lines) - 20} more)"
            lines.append(f"  malformed lines: {shown}{more}")
        if self.interrupted:
            lines.append("  interrupted by operator")
        if self.fatal_error:
            lines.append(f"  aborted: {self.fatal_error}")
        return "\n".join(lines)


__all__ = ["QueueStats", "RunSummary", "EXIT_OK", "EXIT_PARTIAL", "EXIT_FATAL", "EXIT_INTERRUPTED"]
