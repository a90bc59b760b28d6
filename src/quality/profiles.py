"""Quality ladder: discrete media presets ordered from most conservative to richest."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True, slots=True)
class QualityProfile:
    name: str
    display_name: str
    priority: int
    video_width: int
    video_height: int
    fps: int
    max_video_bitrate_bps: int
    max_audio_bitrate_bps: int
    video_enabled: bool


@dataclass(frozen=True, slots=True)
class MediaParameters:
    """Concrete constraints handed to the media engine."""

    width: int
    height: int
    fps: int
    max_video_bitrate_bps: int
    max_audio_bitrate_bps: int
    video_enabled: bool

    @classmethod
    def from_profile(cls, profile: QualityProfile, *, video_enabled: bool | None = None) -> MediaParameters:
        enabled = profile.video_enabled if video_enabled is None else video_enabled and profile.video_enabled
        return cls(
            width=profile.video_width if enabled else 0,
            height=profile.video_height if enabled else 0,
            fps=profile.fps if enabled else 0,
            max_video_bitrate_bps=profile.max_video_bitrate_bps if enabled else 0,
            max_audio_bitrate_bps=profile.max_audio_bitrate_bps,
            video_enabled=enabled,
        )


class ConnectivityClass(str, Enum):
    NONE = "none"
    CELLULAR_2G = "2g"
    CELLULAR_3G = "3g"
    CELLULAR_4G = "4g"
    CELLULAR_5G = "5g"
    LOCAL_AREA = "local_area"
    UNKNOWN = "unknown"


ULTRA_LOW = QualityProfile("ULTRA_LOW", "Ultra Low (2G)", 1, 0, 0, 0, 0, 16_000, False)
VERY_LOW = QualityProfile("VERY_LOW", "Very Low (2G+)", 2, 0, 0, 0, 0, 24_000, False)
LOW = QualityProfile("LOW", "Low (3G)", 3, 160, 120, 10, 100_000, 32_000, True)
MEDIUM_LOW = QualityProfile("MEDIUM_LOW", "Medium Low (3G+)", 4, 320, 240, 15, 250_000, 32_000, True)
MEDIUM = QualityProfile("MEDIUM", "Medium (4G)", 5, 480, 360, 24, 600_000, 48_000, True)
HIGH = QualityProfile("HIGH", "High (4G+/WiFi)", 6, 640, 480, 30, 1_200_000, 64_000, True)
VERY_HIGH = QualityProfile("VERY_HIGH", "Very High (WiFi)", 7, 1280, 720, 30, 2_500_000, 64_000, True)

# Highest priority at which a rung is considered audio-only.
AUDIO_ONLY_MAX_PRIORITY = 2


class ProfileLadder(Sequence[QualityProfile]):
    """Immutable, priority-ordered sequence of quality profiles."""

    def __init__(self, profiles: Iterable[QualityProfile]) -> None:
        ordered = tuple(sorted(profiles, key=lambda p: p.priority))
        if not ordered:
            raise ValueError("Quality ladder needs at least one profile.")
        priorities = [p.priority for p in ordered]
        if len(set(priorities)) != len(priorities):
            raise ValueError("Quality profile priorities must be unique.")
        self._profiles = ordered
        self._by_name = {p.name: p for p in ordered}

    def __getitem__(self, index):  # type: ignore[override]
        return self._profiles[index]

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def bottom(self) -> QualityProfile:
        return self._profiles[0]

    @property
    def top(self) -> QualityProfile:
        return self._profiles[-1]

    def index_of(self, profile: QualityProfile) -> int:
        return self._profiles.index(profile)

    def by_name(self, name: str) -> QualityProfile:
        return self._by_name[name]

    def step(self, profile: QualityProfile, direction: int) -> QualityProfile:
        """Return the neighbouring rung in ``direction`` (+1/-1), clamped at the ends."""

        index = self.index_of(profile) + (1 if direction > 0 else -1 if direction < 0 else 0)
        index = max(0, min(index, len(self._profiles) - 1))
        return self._profiles[index]

    def at_or_below(self, priority: int) -> QualityProfile:
        """Richest rung whose priority does not exceed ``priority``; the bottom rung otherwise."""

        candidates = [p for p in self._profiles if p.priority <= priority]
        return candidates[-1] if candidates else self.bottom


DEFAULT_LADDER = ProfileLadder([ULTRA_LOW, VERY_LOW, LOW, MEDIUM_LOW, MEDIUM, HIGH, VERY_HIGH])

INITIAL_PROFILE_BY_CONNECTIVITY: dict[ConnectivityClass, QualityProfile] = {
    ConnectivityClass.NONE: ULTRA_LOW,
    ConnectivityClass.CELLULAR_2G: ULTRA_LOW,
    ConnectivityClass.CELLULAR_3G: LOW,
    ConnectivityClass.CELLULAR_4G: MEDIUM,
    ConnectivityClass.CELLULAR_5G: VERY_HIGH,
    ConnectivityClass.LOCAL_AREA: HIGH,
    ConnectivityClass.UNKNOWN: MEDIUM_LOW,
}


def initial_profile(connectivity: ConnectivityClass) -> QualityProfile:
    return INITIAL_PROFILE_BY_CONNECTIVITY.get(connectivity, MEDIUM_LOW)


def profile_for_bandwidth(bandwidth_kbps: float) -> QualityProfile:
    """Pick a rung for a measured or estimated bandwidth."""

    if bandwidth_kbps < 50:
        return ULTRA_LOW
    if bandwidth_kbps < 100:
        return VERY_LOW
    if bandwidth_kbps < 300:
        return LOW
    if bandwidth_kbps < 500:
        return MEDIUM_LOW
    if bandwidth_kbps < 1000:
        return MEDIUM
    if bandwidth_kbps < 2000:
        return HIGH
    return VERY_HIGH
