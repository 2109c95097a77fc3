"""Record file inventory: what a backup holds, without touching any broker."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Union

from mqbackup.services.record_codec import read_records


@dataclass
class QueueInventory:
    records: int = 0
    body_bytes: int = 0
    first_line: int = 0
    last_line: int = 0


@dataclass
class RecordFileInventory:
    path: str
    queues: Dict[str, QueueInventory] = field(default_factory=dict)
    malformed_lines: List[int] = field(default_factory=list)

    @property
    def records(self) -> int:
        return sum(q.records for q in self.queues.values())

    @property
    def body_bytes(self) -> int:
        return sum(q.body_bytes for q in self.queues.values())

    def render(self) -> str:
        lines = [f"{self.path}: records={self.records} body_bytes={self.body_bytes} queues={len(self.queues)}"]
        for name, inv in self.queues.items():
            lines.append(
                f"  {name}: records={inv.records} body_bytes={inv.body_bytes} lines={inv.first_line}-{inv.last_line}"
            )
        if self.malformed_lines:
            lines.append(f"  malformed lines: {', '.join(str(n) for n in self.malformed_lines)}")
        return "\n".join(lines)


def inspect_records(path: Union[str, Path]) -> RecordFileInventory:
    inventory = RecordFileInventory(path=str(path))
    for line_no, record in read_records(path, on_error=lambda n, _e: inventory.malformed_lines.append(n)):
        entry = inventory.queues.get(record.queue)
        if entry is None:
            entry = inventory.queues[record.queue] = QueueInventory(first_line=line_no)
        entry.records += 1
        entry.body_bytes += len(record.body)
        entry.last_line = line_no
    return inventory


__all__ = ["inspect_records", "RecordFileInventory", "QueueInventory"]
