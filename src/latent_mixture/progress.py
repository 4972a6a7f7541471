"""
Progress tracking for long-running estimation loops.

EM iterations, random starts and bootstrap draws report progress through a
callback. ``EMProgressCallback`` rate-limits those reports and forwards them
to the package logger; it is safe to share between worker threads.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class ProgressUpdate:
    """A single progress update message."""
    label: str
    progress: float  # 0.0 to 1.0
    message: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    phase: str = "running"  # "initial", "final", "bootstrap", "completed"
    elapsed_seconds: Optional[float] = None
    eta_seconds: Optional[float] = None
    extra: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)


class EMProgressCallback:
    """
    Callback for tracking EM algorithm progress.

    Reports progress based on iteration count and convergence metrics. The
    most recent update is kept in ``last_update``; log records are emitted at
    most once per ``update_interval`` seconds.
    """

    def __init__(
        self,
        label: str,
        max_iter: int,
        update_interval: float = 0.5,
        level: int = logging.DEBUG,
    ):
        self.label = label
        self.max_iter = max_iter
        self.update_interval = update_interval
        self.level = level

        self.current_iter = 0
        self.start_time = None
        self.last_update_time = 0.0
        self.last_update: Optional[ProgressUpdate] = None
        self._lock = threading.Lock()

    def __call__(
        self,
        iteration: int,
        log_likelihood: Optional[float] = None,
        delta: Optional[float] = None,
        extra: Optional[dict] = None,
    ):
        """
        Report progress for an EM iteration.

        Args:
            iteration: Current iteration number
            log_likelihood: Current log-likelihood value
            delta: Change in log-likelihood from previous iteration
            extra: Additional metrics (seed, stage)
        """
        with self._lock:
            current_time = time.time()
            if self.start_time is None:
                self.start_time = current_time
            self.current_iter = iteration

            # Rate limiting
            if current_time - self.last_update_time < self.update_interval:
                return
            self.last_update_time = current_time

            progress = min(iteration / self.max_iter, 1.0) if self.max_iter > 0 else 0.0
            elapsed = current_time - self.start_time

            message_parts = [f"Iteration {iteration}/{self.max_iter}"]
            if log_likelihood is not None:
                message_parts.append(f"LL: {log_likelihood:.3f}")
            if delta is not None:
                message_parts.append(f"delta: {delta:.6g}")
            message = " | ".join(message_parts)

            if elapsed > 0 and progress > 0:
                eta_seconds = elapsed * (1 - progress) / progress
            else:
                eta_seconds = None

            extra = extra or {}
            self.last_update = ProgressUpdate(
                label=self.label,
                progress=progress,
                message=message,
                phase=extra.get("stage", "running"),
                elapsed_seconds=elapsed,
                eta_seconds=eta_seconds,
                extra={
                    "iteration": iteration,
                    "log_likelihood": log_likelihood,
                    "delta": delta,
                    **extra,
                },
            )
        logger.log(self.level, f"[{self.label}] {message}")
