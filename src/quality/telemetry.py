"""Per-call telemetry: derives interval stats from cumulative media-engine counters."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import numpy as np

from quality.predictor import NetworkSample, PredictionResult
from quality.profiles import QualityProfile
from signaling.messages import CallStatsMessage, QualityDistribution

LOGGER = logging.getLogger(__name__)

DEFAULT_SAVE_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_SAMPLES = 300


class QualityBucket(str, Enum):
    GOOD = "good"
    MODERATE = "moderate"
    POOR = "poor"


def quality_bucket(loss_percent: float, rtt_ms: float) -> QualityBucket:
    if loss_percent > 5.0 or rtt_ms > 300:
        return QualityBucket.POOR
    if loss_percent > 2.0 or rtt_ms > 150:
        return QualityBucket.MODERATE
    return QualityBucket.GOOD


@dataclass(frozen=True, slots=True)
class EngineCounters:
    """Cumulative counters read from the media engine's stats report."""

    bytes_sent: int
    bytes_received: int
    packets_sent: int
    packets_lost: int
    rtt_seconds: float | None = None
    jitter_seconds: float | None = None
    timestamp: float = field(default_factory=time.time)


class CounterSource(Protocol):
    async def read_counters(self) -> EngineCounters: ...


@dataclass(frozen=True, slots=True)
class IntervalStats:
    timestamp: float
    send_bitrate_kbps: float
    receive_bitrate_kbps: float
    loss_percent: float
    rtt_ms: float
    jitter_ms: float

    def to_network_sample(self) -> NetworkSample:
        return NetworkSample(
            bitrate_kbps=self.send_bitrate_kbps,
            loss_percent=self.loss_percent,
            rtt_ms=self.rtt_ms,
            jitter_ms=self.jitter_ms,
            timestamp=self.timestamp,
        )


@dataclass(slots=True)
class TelemetryAggregate:
    sample_count: int
    avg_send_bitrate_kbps: float
    avg_receive_bitrate_kbps: float
    avg_loss_percent: float
    avg_rtt_ms: float
    total_data_used_bytes: int
    quality_counts: dict[str, int]
    raw_samples: list[dict[str, Any]]
    rating: int | None = None

    def to_call_stats(
        self,
        *,
        call_id: str,
        caller: str,
        callee: str,
        is_video: bool,
        duration: float,
    ) -> CallStatsMessage:
        return CallStatsMessage(
            call_id=call_id,
            caller=caller,
            callee=callee,
            is_video=is_video,
            duration=max(0.0, duration),
            total_samples=self.sample_count,
            avg_send_bitrate_kbps=self.avg_send_bitrate_kbps,
            avg_receive_bitrate_kbps=self.avg_receive_bitrate_kbps,
            avg_packet_loss_percent=self.avg_loss_percent,
            avg_rtt_ms=self.avg_rtt_ms,
            total_data_used_bytes=self.total_data_used_bytes,
            quality_distribution=QualityDistribution(**self.quality_counts),
            samples=list(self.raw_samples),
            rating=self.rating,
        )


class TelemetrySampler:
    """Turns cumulative counters into interval stats and periodic snapshots.

    Counters may reset when the engine switches codec or network path, so every
    delta is treated as untrusted: negative byte deltas count as zero and the
    loss percentage is clamped to [0, 100].
    """

    def __init__(
        self,
        *,
        save_interval_seconds: float = DEFAULT_SAVE_INTERVAL_SECONDS,
        max_samples: int = DEFAULT_MAX_SAMPLES,
    ) -> None:
        self._save_interval = save_interval_seconds
        self._max_samples = max_samples
        self._last: EngineCounters | None = None
        self._last_rtt_ms = 0.0
        self._last_saved_at: float | None = None
        self._total_data_used = 0
        self._samples: list[dict[str, Any]] = []

    @property
    def total_data_used_bytes(self) -> int:
        return self._total_data_used

    @property
    def samples(self) -> list[dict[str, Any]]:
        return list(self._samples)

    def reset(self) -> None:
        self._last = None
        self._last_rtt_ms = 0.0
        self._last_saved_at = None
        self._total_data_used = 0
        self._samples.clear()

    def sample(
        self,
        counters: EngineCounters,
        *,
        prediction: PredictionResult | None = None,
        profile: QualityProfile | None = None,
    ) -> IntervalStats:
        stats = self.derive(counters)
        self.record(stats, prediction=prediction, profile=profile)
        return stats

    def derive(self, counters: EngineCounters) -> IntervalStats:
        """Compute interval stats against the previous reading and advance the baseline."""

        send_kbps = receive_kbps = loss = 0.0
        previous = self._last
        if previous is not None:
            elapsed = counters.timestamp - previous.timestamp
            sent_delta = max(0, counters.bytes_sent - previous.bytes_sent)
            received_delta = max(0, counters.bytes_received - previous.bytes_received)
            if elapsed > 0:
                send_kbps = sent_delta * 8 / elapsed / 1000
                receive_kbps = received_delta * 8 / elapsed / 1000
            self._total_data_used += sent_delta + received_delta

            packets_sent_delta = counters.packets_sent - previous.packets_sent
            packets_lost_delta = counters.packets_lost - previous.packets_lost
            if packets_sent_delta > 0:
                loss = min(100.0, max(0.0, packets_lost_delta / packets_sent_delta * 100.0))
        else:
            self._total_data_used += max(0, counters.bytes_sent) + max(0, counters.bytes_received)

        if counters.rtt_seconds is not None and counters.rtt_seconds > 0:
            self._last_rtt_ms = counters.rtt_seconds * 1000.0
        jitter_ms = (counters.jitter_seconds or 0.0) * 1000.0

        self._last = counters
        return IntervalStats(
            timestamp=counters.timestamp,
            send_bitrate_kbps=send_kbps,
            receive_bitrate_kbps=receive_kbps,
            loss_percent=loss,
            rtt_ms=self._last_rtt_ms,
            jitter_ms=max(0.0, jitter_ms),
        )

    def record(
        self,
        stats: IntervalStats,
        *,
        prediction: PredictionResult | None = None,
        profile: QualityProfile | None = None,
    ) -> bool:
        """Append a snapshot if the save interval has elapsed. Returns True when stored."""

        if self._last_saved_at is not None and stats.timestamp - self._last_saved_at < self._save_interval:
            return False
        if len(self._samples) >= self._max_samples:
            return False

        snapshot: dict[str, Any] = {
            "timestamp": stats.timestamp,
            "sendBitrateKbps": round(stats.send_bitrate_kbps, 2),
            "receiveBitrateKbps": round(stats.receive_bitrate_kbps, 2),
            "packetLossPercent": round(stats.loss_percent, 2),
            "rttMs": round(stats.rtt_ms, 1),
            "jitterMs": round(stats.jitter_ms, 1),
            "quality": quality_bucket(stats.loss_percent, stats.rtt_ms).value,
        }
        if prediction is not None:
            snapshot["score"] = round(prediction.score, 4)
            snapshot["confidence"] = round(prediction.confidence, 4)
            snapshot["action"] = prediction.action.value
        if profile is not None:
            snapshot["profile"] = profile.name

        self._samples.append(snapshot)
        self._last_saved_at = stats.timestamp
        return True

    def record_user_action(self, action: str, *, timestamp: float | None = None) -> bool:
        """Tag the latest snapshot with a user action. Returns False before the first snapshot."""

        if not self._samples:
            LOGGER.debug("No snapshot to attach user action %r to", action)
            return False
        entry = {"action": action, "timestamp": time.time() if timestamp is None else timestamp}
        self._samples[-1].setdefault("userActions", []).append(entry)
        return True

    def aggregate(self, *, rating: int | None = None) -> TelemetryAggregate:
        """Summarize the stored snapshots. ``rating`` is the user's optional 1-5 score for the call."""

        samples = list(self._samples)
        counts = {bucket.value: 0 for bucket in QualityBucket}
        for sample in samples:
            counts[sample["quality"]] += 1

        def mean(key: str) -> float:
            if not samples:
                return 0.0
            return round(float(np.mean([s[key] for s in samples])), 2)

        return TelemetryAggregate(
            sample_count=len(samples),
            avg_send_bitrate_kbps=mean("sendBitrateKbps"),
            avg_receive_bitrate_kbps=mean("receiveBitrateKbps"),
            avg_loss_percent=mean("packetLossPercent"),
            avg_rtt_ms=mean("rttMs"),
            total_data_used_bytes=self._total_data_used,
            quality_counts=counts,
            raw_samples=samples,
            rating=rating,
        )
