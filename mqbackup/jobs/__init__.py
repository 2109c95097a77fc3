"""
Jobs package: record writer and worker threads.
"""
from .record_writer import RecordWriter
from .worker_pool import WorkerPool

__all__ = ["RecordWriter", "WorkerPool"]
