"""
Models package initialization.
"""
from .record import Record, QueueSpec, PropertyValue, parse_queue_spec
from .summary import QueueStats, RunSummary

__all__ = ["Record", "QueueSpec", "PropertyValue", "parse_queue_spec", "QueueStats", "RunSummary"]
