"""Lightweight predictive model turning live network samples into quality actions.

A logistic-regression style score is computed over a rolling window of the most
recent samples. Hysteresis counters make sure a single noisy reading never
flips the recommended action on its own.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

import numpy as np

from quality.profiles import DEFAULT_LADDER, MEDIUM, ProfileLadder, QualityProfile

LOGGER = logging.getLogger(__name__)

WINDOW_SIZE: Final[int] = 10
STABLE_SAMPLES_FOR_UPGRADE: Final[int] = 5
DEGRADED_SAMPLES_FOR_DOWNGRADE: Final[int] = 2
CONFIDENCE_THRESHOLD: Final[float] = 0.7
UPGRADE_SCORE_THRESHOLD: Final[float] = 0.70
DOWNGRADE_SCORE_THRESHOLD: Final[float] = 0.35
STABLE_SCORE: Final[float] = 0.6
DEGRADED_SCORE: Final[float] = 0.4
MIN_SAMPLES_FOR_STATS: Final[int] = 3

# Keeps the sigmoid strictly inside (0, 1) in double precision.
_Z_LIMIT: Final[float] = 30.0


class QualityAction(str, Enum):
    UPGRADE = "UPGRADE"
    MAINTAIN = "MAINTAIN"
    DOWNGRADE = "DOWNGRADE"


@dataclass(frozen=True, slots=True)
class NetworkSample:
    bitrate_kbps: float
    loss_percent: float
    rtt_ms: float
    jitter_ms: float
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class ModelWeights:
    bitrate: float = 0.012
    loss: float = -0.15
    rtt: float = -0.004
    jitter: float = -0.02
    trend: float = 0.5
    bias: float = 0.5


@dataclass(frozen=True, slots=True)
class PredictionFeatures:
    current_bitrate: float
    avg_bitrate: float
    current_loss: float
    avg_loss: float
    current_rtt: float
    avg_rtt: float
    current_jitter: float
    avg_jitter: float
    trend: float
    bitrate_variance: float
    loss_variance: float


@dataclass(frozen=True, slots=True)
class PredictionResult:
    score: float
    confidence: float
    action: QualityAction
    current_profile: QualityProfile
    suggested_profile: QualityProfile
    features: PredictionFeatures
    reasoning: str


@dataclass(frozen=True, slots=True)
class StatsSummary:
    avg_bitrate: float
    avg_loss: float
    avg_rtt: float
    avg_jitter: float
    trend: float
    sample_count: int


def _sanitize(value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def _mean(window: deque[float]) -> float:
    return float(np.mean(window)) if window else 0.0


def _variance(window: deque[float]) -> float:
    if len(window) < 2:
        return 0.0
    return float(np.var(window))


def sigmoid(z: float) -> float:
    z = max(-_Z_LIMIT, min(_Z_LIMIT, z))
    return 1.0 / (1.0 + math.exp(-z))


class QualityPredictor:
    """Rolling-window quality model with upgrade/downgrade hysteresis."""

    def __init__(
        self,
        ladder: ProfileLadder = DEFAULT_LADDER,
        *,
        current_profile: QualityProfile | None = None,
        weights: ModelWeights | None = None,
        window_size: int = WINDOW_SIZE,
    ) -> None:
        self._ladder = ladder
        self._weights = weights or ModelWeights()
        self._window_size = window_size
        self._bitrate: deque[float] = deque(maxlen=window_size)
        self._loss: deque[float] = deque(maxlen=window_size)
        self._rtt: deque[float] = deque(maxlen=window_size)
        self._jitter: deque[float] = deque(maxlen=window_size)
        self._current_profile = current_profile or (MEDIUM if MEDIUM in ladder else ladder.bottom)
        self._stable_count = 0
        self._degraded_count = 0
        self._last_score: float | None = None

    @property
    def current_profile(self) -> QualityProfile:
        return self._current_profile

    @property
    def stable_count(self) -> int:
        return self._stable_count

    @property
    def degraded_count(self) -> int:
        return self._degraded_count

    @property
    def sample_count(self) -> int:
        return len(self._bitrate)

    def set_current_profile(self, profile: QualityProfile) -> None:
        """Record a rung change applied by the controller and reset the hysteresis counters."""

        self._current_profile = profile
        self._stable_count = 0
        self._degraded_count = 0

    def reset(self) -> None:
        self._bitrate.clear()
        self._loss.clear()
        self._rtt.clear()
        self._jitter.clear()
        self._stable_count = 0
        self._degraded_count = 0
        self._last_score = None

    def predict(self, sample: NetworkSample) -> PredictionResult:
        """Add ``sample`` to the window and return the resulting recommendation."""

        self._bitrate.append(_sanitize(sample.bitrate_kbps))
        self._loss.append(_sanitize(sample.loss_percent))
        self._rtt.append(_sanitize(sample.rtt_ms))
        self._jitter.append(_sanitize(sample.jitter_ms))

        result = self.evaluate()
        self._update_counters(result)
        self._last_score = result.score
        LOGGER.debug(
            "Prediction score=%.3f confidence=%.3f action=%s suggested=%s",
            result.score,
            result.confidence,
            result.action.value,
            result.suggested_profile.name,
        )
        return result

    def evaluate(self) -> PredictionResult:
        """Recompute the recommendation from the current window without mutating state."""

        features = self._extract_features()
        score = self._score(features)
        confidence = self._confidence()
        action = self._determine_action(score, confidence)
        return PredictionResult(
            score=score,
            confidence=confidence,
            action=action,
            current_profile=self._current_profile,
            suggested_profile=self._suggested_profile(action),
            features=features,
            reasoning=self._reasoning(features, score, action),
        )

    def summary(self) -> StatsSummary:
        return StatsSummary(
            avg_bitrate=_mean(self._bitrate),
            avg_loss=_mean(self._loss),
            avg_rtt=_mean(self._rtt),
            avg_jitter=_mean(self._jitter),
            trend=self._trend(),
            sample_count=len(self._bitrate),
        )

    def _extract_features(self) -> PredictionFeatures:
        def last(window: deque[float]) -> float:
            return window[-1] if window else 0.0

        return PredictionFeatures(
            current_bitrate=last(self._bitrate),
            avg_bitrate=_mean(self._bitrate),
            current_loss=last(self._loss),
            avg_loss=_mean(self._loss),
            current_rtt=last(self._rtt),
            avg_rtt=_mean(self._rtt),
            current_jitter=last(self._jitter),
            avg_jitter=_mean(self._jitter),
            trend=self._trend(),
            bitrate_variance=_variance(self._bitrate),
            loss_variance=_variance(self._loss),
        )

    def _trend(self) -> float:
        n = len(self._bitrate)
        if n < MIN_SAMPLES_FOR_STATS:
            return 0.0
        values = np.asarray(self._bitrate, dtype=np.float64)
        half = n // 2
        older = float(np.mean(values[:half]))
        recent = float(np.mean(values[n - half :]))
        peak = float(np.max(values))
        if peak <= 0:
            return 0.0
        return max(-1.0, min(1.0, (recent - older) / peak))

    def _score(self, features: PredictionFeatures) -> float:
        w = self._weights
        norm_bitrate = features.avg_bitrate / 2000.0
        norm_loss = features.avg_loss / 20.0
        norm_rtt = features.avg_rtt / 500.0
        norm_jitter = features.avg_jitter / 100.0
        z = (
            w.bias
            + w.bitrate * norm_bitrate * 100
            + w.loss * norm_loss * 10
            + w.rtt * norm_rtt * 100
            + w.jitter * norm_jitter * 10
            + w.trend * features.trend
        )
        if not math.isfinite(z):
            z = 0.0
        return sigmoid(z)

    def _confidence(self) -> float:
        n = len(self._bitrate)
        if n < MIN_SAMPLES_FOR_STATS:
            return 0.5
        sample_factor = min(n / self._window_size, 1.0)
        variance_factor = 1.0 - min(_variance(self._bitrate) / 100_000.0, 0.5)
        return max(0.0, min(1.0, 0.5 * sample_factor + 0.5 * variance_factor))

    def _determine_action(self, score: float, confidence: float) -> QualityAction:
        if (
            score > UPGRADE_SCORE_THRESHOLD
            and confidence > CONFIDENCE_THRESHOLD
            and self._stable_count >= STABLE_SAMPLES_FOR_UPGRADE
        ):
            return QualityAction.UPGRADE
        if score < DOWNGRADE_SCORE_THRESHOLD and self._degraded_count >= DEGRADED_SAMPLES_FOR_DOWNGRADE:
            return QualityAction.DOWNGRADE
        return QualityAction.MAINTAIN

    def _update_counters(self, result: PredictionResult) -> None:
        if result.action is not QualityAction.MAINTAIN or self._last_score is None:
            return
        if self._last_score > STABLE_SCORE:
            self._stable_count += 1
            self._degraded_count = max(0, self._degraded_count - 1)
        elif self._last_score < DEGRADED_SCORE:
            self._degraded_count += 1
            self._stable_count = max(0, self._stable_count - 1)

    def _suggested_profile(self, action: QualityAction) -> QualityProfile:
        if action is QualityAction.UPGRADE:
            return self._ladder.step(self._current_profile, +1)
        if action is QualityAction.DOWNGRADE:
            return self._ladder.step(self._current_profile, -1)
        return self._current_profile

    @staticmethod
    def _reasoning(features: PredictionFeatures, score: float, action: QualityAction) -> str:
        reasons: list[str] = []
        if features.avg_loss > 10:
            reasons.append(f"High packet loss ({int(features.avg_loss)}%)")
        if features.avg_rtt > 300:
            reasons.append(f"High latency ({int(features.avg_rtt)}ms)")
        if features.avg_jitter > 50:
            reasons.append(f"High jitter ({int(features.avg_jitter)}ms)")
        if features.trend < -0.2:
            reasons.append("Degrading connection")
        if features.trend > 0.2:
            reasons.append("Improving connection")
        if features.avg_bitrate < 100:
            reasons.append("Very low bandwidth")

        action_text = {
            QualityAction.UPGRADE: "Recommending quality upgrade",
            QualityAction.DOWNGRADE: "Recommending quality reduction",
            QualityAction.MAINTAIN: "Maintaining current quality",
        }[action]

        if not reasons:
            return f"{action_text} (Score: {int(score * 100)}%)"
        return f"{action_text}: {', '.join(reasons)}"
