"""
counter.py - Per-transport throughput and corruption accounting.

One ThroughputCounter is owned by each transport of a receiver session.
It accumulates payload bytes and counts bytes that differ from the
sample pattern; derived statistics are computed on demand.
"""

import time

from protocol import SAMPLE_PATTERN, DELIMITER


class ThroughputCounter:
    """Accumulates byte counts and elapsed time for one transport."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self.total_bytes = 0
        self.corrupt_bytes = 0
        self.start_time = None
        self.stop_time = None

    def count(self, payload: bytes) -> None:
        """
        Account for one received chunk.

        The chunk is split on the delimiter and the last fragment is
        dropped, so an unterminated trailing record is never checked.
        The final byte of every record is skipped as well.
        """
        if self.start_time is None:
            self.start_time = self._clock()

        self.total_bytes += len(payload)

        pattern_len = len(SAMPLE_PATTERN)
        for record in payload.split(DELIMITER)[:-1]:
            for idx in range(len(record) - 1):
                if record[idx] != SAMPLE_PATTERN[idx % pattern_len]:
                    self.corrupt_bytes += 1

    def stop(self) -> None:
        """Freeze the elapsed time. Ignored until the first payload."""
        if self.start_time is not None and self.stop_time is None:
            self.stop_time = self._clock()

    def reset(self) -> None:
        self.total_bytes = 0
        self.corrupt_bytes = 0
        self.start_time = None
        self.stop_time = None

    def elapsed_seconds(self) -> float:
        """Seconds since the first payload; a live value until stopped."""
        if self.start_time is None:
            return 0
        end = self.stop_time if self.stop_time is not None else self._clock()
        return round(end - self.start_time, 2)

    def error_rate(self) -> float:
        """Percentage of received bytes that did not match the pattern."""
        if self.total_bytes == 0:
            return 0
        return round(100.0 * self.corrupt_bytes / self.total_bytes, 2)

    def bytes_received(self) -> int:
        return self.total_bytes

    def throughput_kbps(self) -> float:
        """Kilobytes per second, or nan while no time has elapsed."""
        elapsed = self.elapsed_seconds()
        if not elapsed:
            return float("nan")
        return round(self.total_bytes / 1000 / elapsed, 3)
