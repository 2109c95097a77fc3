"""
Retry pacing for replay publishes.

A publish that fails (connection lost or message not confirmed) is retried
until ``max_attempts()`` attempts have been made. After failed attempt ``n``
the publisher sleeps ``compute_backoff_seconds(n)``: the delay grows
by ``factor`` per failed attempt, is capped at ``max_seconds`` and then spread
by +/- ``jitter_pct`` so parallel publishers that failed together do not retry
in lockstep. Unset arguments come from ``mqbackup.config.BACKOFF_POLICY``;
tests zero ``base_seconds`` to retry without waiting.
"""
from __future__ import annotations

import random
from typing import Optional

from mqbackup.config import BACKOFF_POLICY


def _policy(name: str, override: Optional[float]) -> float:
    return float(override if override is not None else BACKOFF_POLICY[name])


def compute_backoff_seconds(
    attempt: int,
    *,
    base: Optional[float] = None,
    factor: Optional[float] = None,
    max_seconds: Optional[float] = None,
    jitter_pct: Optional[float] = None,
) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    exponent = max(attempt, 1) - 1
    delay = min(_policy("base_seconds", base) * _policy("factor", factor) ** exponent, _policy("max_seconds", max_seconds))
    spread = delay * _policy("jitter_pct", jitter_pct)
    if spread > 0:
        delay += random.uniform(-spread, spread)
    return max(delay, 0.0)


def max_attempts(override: Optional[int] = None) -> int:
    """Total publish attempts per record, first try included; never below one."""
    return max(int(_policy("max_attempts", override)), 1)


__all__ = ["compute_backoff_seconds", "max_attempts"]
