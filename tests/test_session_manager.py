from __future__ import annotations

import asyncio

import pytest

from client.session_manager import CallSessionManager
from config.settings import Settings
from conftest import ManualClock
from quality.predictor import QualityAction
from quality.profiles import MEDIUM, MEDIUM_LOW, VERY_LOW, ConnectivityClass
from quality.telemetry import EngineCounters
from signaling.coordinator import CallState
from signaling.errors import SessionStateError, TransportError
from signaling.messages import AnswerMessage, CallStatsMessage, HangupMessage, OfferMessage


class FakeSignaling:
    def __init__(self, *, online: bool = True, fail_sends: bool = False) -> None:
        self.online = online
        self.fail_sends = fail_sends
        self.sent = []

    async def send(self, message) -> None:
        if self.fail_sends:
            raise TransportError("offline")
        self.sent.append(message)

    async def check_user_online(self, user_id: str) -> bool:
        return self.online


class FakePeerConnection:
    async def create_offer(self, *, is_video: bool) -> str:
        return "offer"

    async def create_answer(self) -> str:
        return "answer"

    async def set_remote_description(self, sdp: str, kind: str) -> None:
        return None

    async def add_ice_candidate(self, candidate) -> None:
        return None


class ScriptedCounters:
    """Cumulative counters advancing one second per read."""

    def __init__(self, *, bytes_per_tick: int, packets_per_tick: int, lost_per_tick: int, rtt: float) -> None:
        self.reads = 0
        self.bytes_per_tick = bytes_per_tick
        self.packets_per_tick = packets_per_tick
        self.lost_per_tick = lost_per_tick
        self.rtt = rtt

    async def read_counters(self) -> EngineCounters:
        n = self.reads
        self.reads += 1
        return EngineCounters(
            bytes_sent=n * self.bytes_per_tick,
            bytes_received=n * self.bytes_per_tick,
            packets_sent=n * self.packets_per_tick,
            packets_lost=n * self.lost_per_tick,
            rtt_seconds=self.rtt,
            timestamp=float(n),
        )


class RecordingEngine:
    def __init__(self) -> None:
        self.applied = []

    def apply_parameters(self, parameters) -> None:
        self.applied.append(parameters)


def _manager(signaling, counters=None, *, engine=None, clock=None, connectivity=ConnectivityClass.CELLULAR_4G):
    settings = Settings(stats_interval_seconds=60, stats_save_interval_seconds=1)
    return CallSessionManager(
        "bob",
        signaling,
        peer_connection_factory=FakePeerConnection,
        counter_source=counters
        or ScriptedCounters(bytes_per_tick=250_000, packets_per_tick=100, lost_per_tick=0, rtt=0.03),
        media_engine=engine,
        connectivity=connectivity,
        settings=settings,
        clock=clock or ManualClock(),
    )


def test_place_call_requires_peer_to_be_online():
    manager = _manager(FakeSignaling(online=False))

    with pytest.raises(SessionStateError):
        asyncio.run(manager.place_call("alice"))
    assert manager.state is CallState.IDLE


def test_incoming_call_runs_quality_pipeline_and_reports_stats():
    signaling = FakeSignaling()
    clock = ManualClock()
    engine = RecordingEngine()

    async def scenario():
        manager = _manager(signaling, engine=engine, clock=clock)
        await manager.handle_signal(OfferMessage(sender="alice", to="bob", sdp="v=0", call_id="call-7"))
        assert manager.state is CallState.RINGING
        await manager.accept_incoming()
        assert manager.call.tick_task is not None

        predictions = []
        for _ in range(3):
            clock.advance(1)
            predictions.append(await manager.tick())

        clock.advance(10)
        await manager.handle_signal(HangupMessage(sender="alice", to="bob", call_id="call-7"))
        await manager.wait_idle()
        return manager, predictions

    manager, predictions = asyncio.run(scenario())

    assert manager.state is CallState.ENDED
    assert manager.call.tick_task is None
    assert all(p is not None and p.action is QualityAction.MAINTAIN for p in predictions)
    assert engine.applied and engine.applied[0].width == MEDIUM.video_width

    answer = next(m for m in signaling.sent if isinstance(m, AnswerMessage))
    assert answer.call_id == "call-7"
    stats = signaling.sent[-1]
    assert isinstance(stats, CallStatsMessage)
    assert stats.call_id == "call-7"
    assert (stats.caller, stats.callee) == ("alice", "bob")
    assert stats.total_samples == 3
    assert stats.duration == 13
    assert stats.quality_distribution.good == 3


def test_sustained_loss_steps_down_one_rung():
    counters = ScriptedCounters(bytes_per_tick=100, packets_per_tick=100, lost_per_tick=50, rtt=2.0)

    async def scenario():
        manager = _manager(FakeSignaling(), counters)
        await manager.handle_signal(OfferMessage(sender="alice", to="bob", sdp="v=0", call_id="c"))
        await manager.accept_incoming()
        results = [await manager.tick() for _ in range(4)]
        profile = manager.call.controller.current_profile
        await manager.hangup()
        await manager.close()
        return results, profile

    results, profile = asyncio.run(scenario())

    assert [r.action for r in results][-1] is QualityAction.DOWNGRADE
    assert profile == MEDIUM_LOW


def test_audio_only_preference_applies_to_new_calls():
    engine = RecordingEngine()

    async def scenario():
        manager = _manager(FakeSignaling(), engine=engine)
        manager.set_audio_only(True)
        await manager.handle_signal(OfferMessage(sender="alice", to="bob", sdp="v=0", call_id="c"))
        return manager

    manager = asyncio.run(scenario())

    assert manager.call.controller.current_profile == VERY_LOW
    assert engine.applied[-1].video_enabled is False


def test_stats_delivery_failure_is_dropped():
    signaling = FakeSignaling()

    async def scenario():
        manager = _manager(signaling)
        await manager.handle_signal(OfferMessage(sender="alice", to="bob", sdp="v=0", call_id="c"))
        await manager.accept_incoming()
        await manager.tick()
        signaling.fail_sends = True
        await manager.hangup()
        await manager.wait_idle()
        return manager

    manager = asyncio.run(scenario())

    assert manager.state is CallState.ENDED
    assert not any(isinstance(m, CallStatsMessage) for m in signaling.sent)


def test_second_incoming_offer_while_busy_is_ignored():
    async def scenario():
        manager = _manager(FakeSignaling())
        await manager.handle_signal(OfferMessage(sender="alice", to="bob", sdp="v=0", call_id="c1"))
        first = manager.call
        await manager.handle_signal(OfferMessage(sender="carol", to="bob", sdp="v=0", call_id="c2"))
        return first, manager

    first, manager = asyncio.run(scenario())

    assert manager.call is first
    assert manager.call.coordinator.peer_id == "alice"


class PredictionListener:
    def __init__(self) -> None:
        self.predictions = []
        self.changes = []

    def on_profile_changed(self, profile, parameters, reason) -> None:
        self.changes.append(profile)

    def on_suggest_audio_only(self, reason) -> None:
        pass

    def on_prediction(self, prediction) -> None:
        self.predictions.append(prediction)


def test_predictions_reach_listener_and_rating_is_reported():
    signaling = FakeSignaling()
    clock = ManualClock()
    listener = PredictionListener()

    async def scenario():
        manager = CallSessionManager(
            "bob",
            signaling,
            peer_connection_factory=FakePeerConnection,
            counter_source=ScriptedCounters(bytes_per_tick=250_000, packets_per_tick=100, lost_per_tick=0, rtt=0.03),
            adaptation_listener=listener,
            connectivity=ConnectivityClass.CELLULAR_4G,
            settings=Settings(stats_interval_seconds=60, stats_save_interval_seconds=1),
            clock=clock,
        )
        assert manager.record_user_action("mute") is False
        await manager.handle_signal(OfferMessage(sender="alice", to="bob", sdp="v=0", call_id="call-3"))
        await manager.accept_incoming()
        results = []
        for _ in range(2):
            clock.advance(1)
            results.append(await manager.tick())
        assert manager.record_user_action("mute")
        await manager.hangup(rating=5)
        await manager.wait_idle()
        return results

    results = asyncio.run(scenario())

    assert listener.predictions == results
    assert listener.changes
    stats = signaling.sent[-1]
    assert isinstance(stats, CallStatsMessage)
    assert stats.rating == 5
    assert stats.samples[-1]["userActions"][0]["action"] == "mute"


def test_out_of_range_rating_is_rejected():
    async def scenario():
        manager = _manager(FakeSignaling())
        await manager.handle_signal(OfferMessage(sender="alice", to="bob", sdp="v=0", call_id="c"))
        await manager.accept_incoming()
        with pytest.raises(ValueError):
            await manager.hangup(rating=9)
        state = manager.state
        await manager.close()
        return state

    assert asyncio.run(scenario()) is CallState.CONNECTED
