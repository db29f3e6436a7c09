"""Bounded retry loops with exponential backoff and jitter."""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

from ..errors import BackoffTimeoutError, ReconcileCancelledError


@dataclass
class Backoff:
    """Backoff parameters for a bounded retry loop.

    Attributes:
        duration: Initial delay in seconds
        factor: Multiplier applied to the delay after each step (0 keeps it constant)
        jitter: Adds up to ``jitter * duration`` of random delay to each step
        steps: Maximum number of attempts
        cap: Upper bound for the delay once it grows (None for unbounded)
    """

    duration: float
    factor: float = 0.0
    jitter: float = 0.0
    steps: int = 1
    cap: float | None = None

    def step(self) -> float:
        """Return the next delay and advance the backoff state."""
        delay = self.duration
        if self.jitter > 0:
            delay += random.random() * self.jitter * self.duration

        if self.factor != 0:
            self.duration *= self.factor
            if self.cap is not None and self.duration > self.cap:
                self.duration = self.cap

        return delay

    def copy(self) -> Backoff:
        """Return a fresh copy so shared defaults are never mutated."""
        return Backoff(
            duration=self.duration,
            factor=self.factor,
            jitter=self.jitter,
            steps=self.steps,
            cap=self.cap,
        )


def _sleep(delay: float, cancel: threading.Event | None) -> None:
    if cancel is None:
        time.sleep(delay)
        return
    if cancel.wait(delay):
        raise ReconcileCancelledError("Cancelled while backing off")


def exponential_backoff(
    backoff: Backoff,
    condition: Callable[[], bool],
    cancel: threading.Event | None = None,
) -> int:
    """Call ``condition`` until it returns True or the backoff runs out of steps.

    Args:
        backoff: Backoff parameters (copied, never mutated)
        condition: Returns True when done, False to retry; exceptions abort the loop
        cancel: Optional event that aborts the loop when set

    Returns:
        Number of attempts made

    Raises:
        BackoffTimeoutError: If all steps were used without success
        ReconcileCancelledError: If ``cancel`` was set
    """
    state = backoff.copy()
    attempts = 0
    while attempts < state.steps:
        if cancel is not None and cancel.is_set():
            raise ReconcileCancelledError("Cancelled before attempt")
        attempts += 1
        if condition():
            return attempts
        if attempts == state.steps:
            break
        _sleep(state.step(), cancel)

    raise BackoffTimeoutError(attempts)
