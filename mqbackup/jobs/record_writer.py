"""Append-only record file writer.

Features:
- One complete line per record, written under a lock so concurrent drain
  workers never interleave.
- ``append`` returns only once the line is flushed (and fsynced unless
  disabled), which is what allows the caller to acknowledge the message.
- A trailing partial line left by a crashed run is terminated before new
  records are written, so it stays an isolated (skippable) malformed line.
"""
from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import BinaryIO, Optional, Union

from mqbackup.models.record import Record
from mqbackup.services.record_codec import encode_record
from mqbackup.utils import get_logger

logger = get_logger(__name__)


class RecordWriter:
    def __init__(self, path: Union[str, Path], *, fsync: bool = True) -> None:
        self.path = Path(path)
        self.fsync = fsync
        self.records_written = 0
        self._lock = threading.Lock()
        self._fh: Optional[BinaryIO] = None
        self._open()

    def _open(self) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        needs_newline = False
        existing = self.path.stat().st_size if self.path.exists() else 0
        if existing:
            with open(self.path, "rb") as fh:
                fh.seek(-1, os.SEEK_END)
                needs_newline = fh.read(1) != b"\n"
            logger.info("Appending to existing record file", path=str(self.path), size=existing)
        self._fh = open(self.path, "ab")
        if needs_newline:
            logger.warning("Record file ends with a partial line; terminating it", path=str(self.path))
            self._write(b"\n")

    def _write(self, data: bytes) -> None:
        assert self._fh is not None
        self._fh.write(data)
        self._fh.flush()
        if self.fsync:
            os.fsync(self._fh.fileno())

    def append(self, record: Record) -> None:
        """Durably append one record. Raises OSError if the write fails."""
        line = encode_record(record)
        with self._lock:
            if self._fh is None:
                raise ValueError("Record writer is closed")
            self._write(line)
            self.records_written += 1

    def close(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            try:
                self._fh.flush()
                if self.fsync:
                    os.fsync(self._fh.fileno())
            finally:
                self._fh.close()
                self._fh = None
        logger.debug("Record file closed", path=str(self.path), records=self.records_written)

    @property
    def closed(self) -> bool:
        return self._fh is None

    def __enter__(self) -> "RecordWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = ["RecordWriter"]
