"""
ImageSync
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import dataclasses
import math


@dataclasses.dataclass(frozen=True)
class LatencyMetrics:
    last_ms: float = 0.0
    avg_ms: float = 0.0
    min_ms: float = math.inf  # no sample yet
    max_ms: float = 0.0
    sample_count: int = 0
    reconnection_attempts: int = 0
    failed_messages: int = 0
    successful_messages: int = 0

    def as_dict(self) -> dict:
        return dataclasses.asdict(self)


class LatencyTracker:
    """
    Running latency statistics for one adapter instance.

    Samples are (sentAt, receivedAt) pairs in milliseconds; the mean is kept incrementally so nothing but the
    counters is retained between samples.
    """

    def __init__(self):
        self._last_ms = 0.0
        self._avg_ms = 0.0
        self._min_ms = math.inf
        self._max_ms = 0.0
        self._sample_count = 0
        self._reconnection_attempts = 0
        self._failed_messages = 0
        self._successful_messages = 0

    def record_sample(self, latency_ms: float):
        self._sample_count += 1
        n = self._sample_count
        self._last_ms = latency_ms
        self._avg_ms = (self._avg_ms * (n - 1) + latency_ms) / n
        self._min_ms = min(self._min_ms, latency_ms)
        self._max_ms = max(self._max_ms, latency_ms)

    def record_ack(self, sent_at: float, received_at: float):
        self.record_sample(received_at - sent_at)

    def record_success(self):
        self._successful_messages += 1

    def record_failure(self):
        self._failed_messages += 1

    def record_reconnect(self):
        self._reconnection_attempts += 1

    def snapshot(self) -> LatencyMetrics:
        return LatencyMetrics(
            last_ms=self._last_ms,
            avg_ms=self._avg_ms,
            min_ms=self._min_ms,
            max_ms=self._max_ms,
            sample_count=self._sample_count,
            reconnection_attempts=self._reconnection_attempts,
            failed_messages=self._failed_messages,
            successful_messages=self._successful_messages,
        )
