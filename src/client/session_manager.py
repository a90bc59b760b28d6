"""Client-side owner of the active call and its quality pipeline.

One manager exists per signed-in client and is passed to whatever needs it.
It creates a :class:`SessionCoordinator` for each call and, while the call is
connected, runs a single periodic tick that samples the media engine, feeds the
predictor and lets the controller adjust the outgoing media parameters.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from config.settings import Settings, get_settings
from quality.controller import AdaptationListener, MediaEngine, ProfileController
from quality.predictor import PredictionResult, QualityPredictor
from quality.profiles import ConnectivityClass
from quality.telemetry import CounterSource, TelemetrySampler
from signaling.coordinator import CallState, CoordinatorListener, PeerConnection, SessionCoordinator
from signaling.errors import SessionStateError, TransportError
from signaling.messages import OfferMessage, PeerMessage, WireModel

LOGGER = logging.getLogger(__name__)


class SignalingPort(Protocol):
    async def send(self, message: WireModel) -> None: ...

    async def check_user_online(self, user_id: str) -> bool: ...


@dataclass(slots=True)
class CallContext:
    coordinator: SessionCoordinator
    predictor: QualityPredictor
    controller: ProfileController
    sampler: TelemetrySampler
    is_caller: bool
    connected_at: float | None = None
    ended_at: float | None = None
    last_prediction: PredictionResult | None = None
    rating: int | None = None
    tick_task: asyncio.Task | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)


class CallSessionManager:
    """Single owner of the current call; all transitions run on the event loop."""

    def __init__(
        self,
        user_id: str,
        signaling: SignalingPort,
        *,
        peer_connection_factory: Callable[[], PeerConnection],
        counter_source: CounterSource,
        media_engine: MediaEngine | None = None,
        connectivity: ConnectivityClass = ConnectivityClass.UNKNOWN,
        call_listener: CoordinatorListener | None = None,
        adaptation_listener: AdaptationListener | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._user_id = user_id
        self._signaling = signaling
        self._pc_factory = peer_connection_factory
        self._counters = counter_source
        self._media_engine = media_engine
        self._connectivity = connectivity
        self._call_listener = call_listener
        self._adaptation_listener = adaptation_listener
        self._settings = settings or get_settings()
        self._clock = clock
        self._call: CallContext | None = None
        self._audio_only = False
        self._conservative_pin = False

    @property
    def call(self) -> CallContext | None:
        return self._call

    @property
    def state(self) -> CallState:
        if self._call is None:
            return CallState.IDLE
        return self._call.coordinator.state

    def set_connectivity(self, connectivity: ConnectivityClass) -> None:
        self._connectivity = connectivity

    def set_audio_only(self, enabled: bool) -> None:
        self._audio_only = enabled
        if self._is_active():
            self._call.controller.set_audio_only(enabled)

    def set_conservative_pin(self, enabled: bool) -> None:
        self._conservative_pin = enabled
        if self._is_active():
            self._call.controller.set_conservative_pin(enabled)

    async def place_call(self, peer_id: str, *, is_video: bool = True, verify_presence: bool = True) -> None:
        if self._is_active():
            raise SessionStateError("A call is already in progress.")
        if verify_presence and not await self._signaling.check_user_online(peer_id):
            raise SessionStateError(f"User {peer_id} is not online.")
        call = self._new_call(is_caller=True)
        await call.coordinator.place_call(peer_id, is_video=is_video)

    async def accept_incoming(self) -> None:
        await self._require_call().coordinator.accept_incoming()

    async def reject(self) -> None:
        await self._require_call().coordinator.reject()

    async def hangup(self, *, rating: int | None = None) -> None:
        """End the current call. ``rating`` (1-5) is attached to the reported call stats."""

        if rating is not None and not 1 <= rating <= 5:
            raise ValueError(f"Call rating must be between 1 and 5, got {rating}.")
        if self._call is not None:
            if rating is not None:
                self._call.rating = rating
            await self._call.coordinator.hangup()

    def record_user_action(self, action: str) -> bool:
        """Tag the latest telemetry snapshot of the current call with a user action."""

        if self._call is None:
            return False
        return self._call.sampler.record_user_action(action, timestamp=self._clock())

    async def send_emoji(self, emoji: str) -> None:
        await self._require_call().coordinator.send_emoji(emoji)

    async def handle_signal(self, message: PeerMessage) -> None:
        """Entry point for peer messages delivered by the signaling client."""

        if isinstance(message, OfferMessage) and not self._is_active():
            self._new_call(is_caller=False)
        if self._call is None:
            LOGGER.warning("Dropping %s from %s: no call", message.type, message.sender)
            return
        await self._call.coordinator.handle(message)

    def on_connection_error(self, error: str) -> None:
        if self._call is not None:
            self._call.coordinator.on_transport_error(error)

    async def tick(self) -> PredictionResult | None:
        """Run one sampling/prediction/adaptation step for the connected call."""

        call = self._call
        if call is None or call.coordinator.state is not CallState.CONNECTED:
            return None
        counters = await self._counters.read_counters()
        stats = call.sampler.derive(counters)
        prediction = call.predictor.predict(stats.to_network_sample())
        call.controller.on_prediction(prediction)
        call.sampler.record(stats, prediction=prediction, profile=call.controller.current_profile)
        call.last_prediction = prediction
        if self._adaptation_listener is not None:
            self._adaptation_listener.on_prediction(prediction)
        return prediction

    async def close(self) -> None:
        call = self._call
        if call is None:
            return
        self._cancel_tick(call)
        for task in list(call.tasks):
            task.cancel()
        for task in list(call.tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def wait_idle(self) -> None:
        """Wait for background work (stats delivery) of the current call to finish."""

        if self._call is not None and self._call.tasks:
            await asyncio.gather(*self._call.tasks, return_exceptions=True)

    # Internals

    def _new_call(self, *, is_caller: bool) -> CallContext:
        predictor = QualityPredictor()
        controller = ProfileController(
            predictor=predictor,
            media_engine=self._media_engine,
            listener=self._adaptation_listener,
            cooldown_ms=self._settings.adaptation_cooldown_ms,
            clock=self._clock,
        )
        sampler = TelemetrySampler(
            save_interval_seconds=self._settings.stats_save_interval_seconds,
            max_samples=self._settings.telemetry_max_samples,
        )
        coordinator = SessionCoordinator(
            self._user_id,
            self._pc_factory(),
            self._signaling.send,
            listener=_CallEvents(self),
        )
        call = CallContext(
            coordinator=coordinator,
            predictor=predictor,
            controller=controller,
            sampler=sampler,
            is_caller=is_caller,
        )
        self._call = call

        if self._conservative_pin:
            controller.set_conservative_pin(True)
        controller.initialize(self._connectivity)
        if self._audio_only:
            controller.set_audio_only(True)
        return call

    def _is_active(self) -> bool:
        return self._call is not None and self._call.coordinator.state not in (CallState.IDLE, CallState.ENDED)

    def _require_call(self) -> CallContext:
        if self._call is None:
            raise SessionStateError("No call in progress.")
        return self._call

    def _on_state_changed(self, state: CallState) -> None:
        call = self._call
        if call is None:
            return
        if state is CallState.CONNECTED:
            call.connected_at = self._clock()
            call.tick_task = asyncio.get_running_loop().create_task(self._tick_loop(call))
        elif state is CallState.ENDED:
            call.ended_at = self._clock()
            self._cancel_tick(call)
            if call.connected_at is not None:
                task = asyncio.get_running_loop().create_task(self._deliver_stats(call))
                call.tasks.add(task)
                task.add_done_callback(call.tasks.discard)
        if self._call_listener is not None:
            self._call_listener.on_state_changed(state)

    async def _tick_loop(self, call: CallContext) -> None:
        interval = self._settings.stats_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if self._call is not call:
                return
            try:
                await self.tick()
            except Exception:
                LOGGER.exception("Quality tick failed")

    @staticmethod
    def _cancel_tick(call: CallContext) -> None:
        if call.tick_task is not None and not call.tick_task.done():
            call.tick_task.cancel()
        call.tick_task = None

    async def _deliver_stats(self, call: CallContext) -> None:
        coordinator = call.coordinator
        if coordinator.call_id is None or coordinator.peer_id is None:
            LOGGER.info("Skipping call stats: no call id")
            return
        duration = (call.ended_at or self._clock()) - (call.connected_at or self._clock())
        caller, callee = (
            (self._user_id, coordinator.peer_id) if call.is_caller else (coordinator.peer_id, self._user_id)
        )
        message = call.sampler.aggregate(rating=call.rating).to_call_stats(
            call_id=coordinator.call_id,
            caller=caller,
            callee=callee,
            is_video=coordinator.is_video,
            duration=duration,
        )
        try:
            await self._signaling.send(message)
        except TransportError as exc:
            LOGGER.warning("Dropping call stats for %s: %s", coordinator.call_id, exc.detail)
        else:
            LOGGER.info("Delivered call stats for %s (%d samples)", coordinator.call_id, message.total_samples)
        finally:
            call.sampler.reset()


class _CallEvents:
    """Fans coordinator events out to the manager and the application listener."""

    def __init__(self, manager: CallSessionManager) -> None:
        self._manager = manager

    def on_state_changed(self, state: CallState) -> None:
        self._manager._on_state_changed(state)  # noqa: SLF001

    def on_connection_error(self, error: str) -> None:
        listener = self._manager._call_listener  # noqa: SLF001
        if listener is not None:
            listener.on_connection_error(error)

    def on_emoji(self, sender: str, emoji: str) -> None:
        listener = self._manager._call_listener  # noqa: SLF001
        if listener is not None:
            listener.on_emoji(sender, emoji)
