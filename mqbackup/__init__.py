"""
mqbackup: application-level backup and restore of message broker queues.

``drain`` copies queued messages (body + properties) into an append-only
record file; ``replay`` republishes a record file to a target broker.
"""

__version__ = "0.1.0"
