"""Turns predictor recommendations into rung transitions on the quality ladder."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from quality.predictor import PredictionResult, QualityAction, QualityPredictor
from quality.profiles import (
    AUDIO_ONLY_MAX_PRIORITY,
    DEFAULT_LADDER,
    ConnectivityClass,
    MediaParameters,
    ProfileLadder,
    QualityProfile,
    initial_profile,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MS = 3000


class MediaEngine(Protocol):
    """Sink for concrete media constraints (capture format and sender bitrate caps)."""

    def apply_parameters(self, parameters: MediaParameters) -> None: ...


class AdaptationListener(Protocol):
    def on_profile_changed(self, profile: QualityProfile, parameters: MediaParameters, reason: str) -> None: ...

    def on_suggest_audio_only(self, reason: str) -> None: ...

    def on_prediction(self, prediction: PredictionResult) -> None: ...


class ProfileController:
    """Owns the current rung and applies at most one-step transitions.

    Transitions are rate limited by ``cooldown_ms``. Two standing overrides
    bypass the ladder logic: the conservative pin locks the bottom rung, and
    audio-only mode holds a rung at or below the audio-only threshold with video
    disabled.
    """

    def __init__(
        self,
        ladder: ProfileLadder = DEFAULT_LADDER,
        *,
        predictor: QualityPredictor | None = None,
        media_engine: MediaEngine | None = None,
        listener: AdaptationListener | None = None,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ladder = ladder
        self._predictor = predictor
        self._media_engine = media_engine
        self._listener = listener
        self._cooldown_ms = cooldown_ms
        self._clock = clock
        self._connectivity = ConnectivityClass.UNKNOWN
        self._current = ladder.bottom
        self._last_transition_ms: float | None = None
        self._conservative_pin = False
        self._audio_only = False

    @property
    def ladder(self) -> ProfileLadder:
        return self._ladder

    @property
    def current_profile(self) -> QualityProfile:
        return self._current

    @property
    def conservative_pin(self) -> bool:
        return self._conservative_pin

    @property
    def audio_only(self) -> bool:
        return self._audio_only

    @property
    def media_parameters(self) -> MediaParameters:
        return MediaParameters.from_profile(self._current, video_enabled=not self._audio_only)

    def initialize(self, connectivity: ConnectivityClass) -> QualityProfile:
        """Choose the starting rung from the coarse connectivity class."""

        self._connectivity = connectivity
        if self._conservative_pin:
            profile = self._ladder.bottom
        else:
            profile = self._nearest_on_ladder(initial_profile(connectivity))
        LOGGER.info("Initial quality profile %s for connectivity=%s", profile.name, connectivity.value)
        self._apply(profile, f"Initial: {connectivity.value}", force=True)
        # The starting rung is not an adaptation and does not open a cooldown.
        self._last_transition_ms = None
        return profile

    def on_prediction(self, prediction: PredictionResult) -> QualityProfile | None:
        return self.apply_action(prediction.action, prediction.suggested_profile, reason=prediction.reasoning)

    def apply_action(
        self,
        action: QualityAction,
        suggested: QualityProfile | None = None,
        *,
        reason: str = "",
    ) -> QualityProfile | None:
        """Move at most one rung in the direction of ``action``.

        Returns the newly applied profile, or ``None`` when nothing changed.
        ``suggested`` is only informational; the step size is always one rung.
        """

        if action is QualityAction.MAINTAIN or self._conservative_pin:
            return None
        if action is QualityAction.UPGRADE and self._audio_only:
            return None

        now_ms = self._clock() * 1000.0
        if self._last_transition_ms is not None and now_ms - self._last_transition_ms < self._cooldown_ms:
            LOGGER.debug("Adaptation on cooldown; withholding %s", action.value)
            return None

        direction = 1 if action is QualityAction.UPGRADE else -1
        target = self._ladder.step(self._current, direction)
        if self._audio_only and target.priority > AUDIO_ONLY_MAX_PRIORITY:
            return None
        if target == self._current:
            return None
        if suggested is not None and suggested != target:
            LOGGER.debug("Predictor suggested %s; stepping to %s", suggested.name, target.name)

        self._apply(target, reason or f"Predictor {action.value.lower()}")
        if action is QualityAction.DOWNGRADE and target.priority <= AUDIO_ONLY_MAX_PRIORITY:
            if self._listener is not None:
                self._listener.on_suggest_audio_only(reason)
        return target

    def set_conservative_pin(self, enabled: bool) -> None:
        self._conservative_pin = enabled
        LOGGER.info("Conservative pin: %s", enabled)
        if enabled:
            self._apply(self._ladder.bottom, "Conservative pin enabled", force=True)
        else:
            self.initialize(self._connectivity)

    def set_audio_only(self, enabled: bool) -> None:
        self._audio_only = enabled
        LOGGER.info("Audio-only mode: %s", enabled)
        if enabled:
            if self._conservative_pin:
                target = self._ladder.bottom
            elif self._current.priority <= AUDIO_ONLY_MAX_PRIORITY:
                target = self._current
            else:
                target = self._ladder.at_or_below(AUDIO_ONLY_MAX_PRIORITY)
            self._apply(target, "Audio-only mode", force=True)
        else:
            self._apply(self._current, "Audio-only mode disabled", force=True)

    def _nearest_on_ladder(self, profile: QualityProfile) -> QualityProfile:
        if profile in self._ladder:
            return profile
        return self._ladder.at_or_below(profile.priority)

    def _apply(self, profile: QualityProfile, reason: str, *, force: bool = False) -> None:
        if profile == self._current and not force:
            return

        previous = self._current
        self._current = profile
        self._last_transition_ms = self._clock() * 1000.0
        if self._predictor is not None:
            self._predictor.set_current_profile(profile)

        parameters = self.media_parameters
        if self._media_engine is not None:
            try:
                self._media_engine.apply_parameters(parameters)
            except Exception:
                LOGGER.exception("Media engine rejected parameters for %s", profile.name)

        if previous != profile:
            LOGGER.info("Adapted: %s -> %s (%s)", previous.display_name, profile.display_name, reason)
        if self._listener is not None:
            self._listener.on_profile_changed(profile, parameters, reason)
