"""
Rate-limited logging for telemetry the ingest path throws away.

A misconfigured device can publish several messages a second for a serial
the directory does not know; logging each one would drown the fall alerts
we actually care about. Drops of a configured type are counted, a random
fraction of them is logged as it happens, and a background thread writes
one summary line per type when its window closes.
"""
import logging
import os
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_KEPT_SAMPLES = 3


@dataclass
class SamplingConfig:
    sample_rate: float
    aggregate_window: float = 60.0


@dataclass
class _DropWindow:
    count: int = 0
    opened_at: float = 0.0
    latest_at: float = 0.0
    samples: List[str] = field(default_factory=list)

    def add(self, message: str, now: float) -> None:
        if not self.count:
            self.opened_at = now
        self.count += 1
        self.latest_at = now
        if len(self.samples) < _KEPT_SAMPLES:
            self.samples.append(message[:100])

    def summary(self, event_type: str) -> str:
        span = self.latest_at - self.opened_at
        per_second = self.count / span if span > 0 else float(self.count)
        line = f"[SUMMARY] {event_type}: {self.count} drops in {span:.1f}s ({per_second:.1f}/s)"
        if self.samples:
            line += " | Samples: " + "; ".join(self.samples[:2])
        return line


def _env_rate(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def default_sampling_configs() -> Dict[str, SamplingConfig]:
    window = _env_rate("LOG_AGG_WINDOW", "60")
    rates = {
        "unknown_device": _env_rate("LOG_SAMPLE_UNKNOWN_DEVICE", "0.05"),
        "unpaired_device": _env_rate("LOG_SAMPLE_UNPAIRED_DEVICE", "0.10"),
        "malformed_payload": _env_rate("LOG_SAMPLE_MALFORMED", "0.10"),
        "bad_topic": 0.05,
        "queue_full": 0.01,
    }
    return {name: SamplingConfig(rate, window) for name, rate in rates.items()}


class SampledLogger:
    def __init__(
        self,
        configs: Optional[Dict[str, SamplingConfig]] = None,
        flush_interval: float = 30.0,
        start_thread: bool = True,
    ):
        self.configs = default_sampling_configs() if configs is None else configs
        self._windows: Dict[str, _DropWindow] = {}
        self._guard = threading.Lock()
        self._flush_interval = flush_interval
        self._stopping = threading.Event()
        self._worker: Optional[threading.Thread] = None
        if start_thread:
            self._worker = threading.Thread(
                target=self._run, name="sampled-log-flush", daemon=True
            )
            self._worker.start()

    def log(
        self,
        event_type: str,
        message: str,
        level: int = logging.WARNING,
        extra: Optional[dict] = None,
    ) -> bool:
        """Count one drop of ``event_type``; True if this one reached the log."""
        config = self.configs.get(event_type)
        if config is None:
            logger.log(level, message, extra=extra)
            return True

        with self._guard:
            self._windows.setdefault(event_type, _DropWindow()).add(message, time.time())

        rate = config.sample_rate
        if rate < 1.0 and random.random() >= rate:
            return False
        prefix = f"[SAMPLED 1/{round(1 / rate)}] " if rate < 1.0 else ""
        logger.log(level, prefix + message, extra=extra)
        return True

    def flush(self, force: bool = False) -> int:
        """Write summaries for closed windows (all of them when forced)."""
        now = time.time()
        closed = []
        with self._guard:
            for event_type, window in self._windows.items():
                config = self.configs.get(event_type)
                if config is None or not window.count:
                    continue
                if force or now - window.opened_at >= config.aggregate_window:
                    closed.append((event_type, window))
            for event_type, _ in closed:
                self._windows[event_type] = _DropWindow()

        for event_type, window in closed:
            logger.warning(
                window.summary(event_type),
                extra={"drop_type": event_type, "drop_count": window.count},
            )
        return len(closed)

    def get_stats(self) -> Dict[str, dict]:
        with self._guard:
            return {
                event_type: {
                    "count": window.count,
                    "first_seen": window.opened_at,
                    "last_seen": window.latest_at,
                }
                for event_type, window in self._windows.items()
            }

    def shutdown(self) -> None:
        self._stopping.set()
        if self._worker is not None:
            self._worker.join(timeout=5)
        self.flush(force=True)

    def _run(self) -> None:
        while not self._stopping.wait(self._flush_interval):
            self.flush()


_shared: Optional[SampledLogger] = None


def get_sampled_logger() -> SampledLogger:
    global _shared
    if _shared is None:
        _shared = SampledLogger()
    return _shared
