"""Client-side call signaling state machine.

States: IDLE -> CALLING | RINGING -> CONNECTED -> ENDED. ENDED is terminal; a
new coordinator is created for every call.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Literal, Protocol

from signaling.errors import SessionStateError, SignalingError, TransportError
from signaling.messages import (
    AnswerMessage,
    CandidateMessage,
    EmojiMessage,
    HangupMessage,
    IceCandidate,
    OfferMessage,
    PeerMessage,
    RejectMessage,
    WireModel,
)

LOGGER = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


class PeerConnection(Protocol):
    """Negotiation surface of the external media engine."""

    async def create_offer(self, *, is_video: bool) -> str: ...

    async def create_answer(self) -> str: ...

    async def set_remote_description(self, sdp: str, kind: Literal["offer", "answer"]) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...


class CoordinatorListener(Protocol):
    def on_state_changed(self, state: CallState) -> None: ...

    def on_connection_error(self, error: str) -> None: ...

    def on_emoji(self, sender: str, emoji: str) -> None: ...


SendFn = Callable[[WireModel], Awaitable[None]]


class SessionCoordinator:
    """Drives one call through offer/answer/candidate exchange.

    Remote ICE candidates that arrive before the remote description has been
    acknowledged by the engine are queued and drained in arrival order exactly
    once. Every mutation runs under a single lock so concurrent deliveries are
    serialized in the order they reached the coordinator.
    """

    def __init__(
        self,
        local_user_id: str,
        peer_connection: PeerConnection,
        send: SendFn,
        *,
        listener: CoordinatorListener | None = None,
    ) -> None:
        self._local_user_id = local_user_id
        self._pc = peer_connection
        self._send_fn = send
        self._listener = listener
        self._lock = asyncio.Lock()

        self._state = CallState.IDLE
        self._peer_id: str | None = None
        self._is_video = True
        self._call_id: str | None = None
        self._remote_offer_sdp: str | None = None
        self._remote_description_set = False
        self._pending_candidates: list[IceCandidate] = []

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def call_id(self) -> str | None:
        return self._call_id

    @property
    def is_video(self) -> bool:
        return self._is_video

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    # Local actions

    async def place_call(self, peer_id: str, *, is_video: bool = True) -> None:
        async with self._lock:
            if self._state is not CallState.IDLE:
                raise SessionStateError(f"Cannot place a call while {self._state.value}.")
            self._peer_id = peer_id
            self._is_video = is_video
            sdp = await self._pc.create_offer(is_video=is_video)
            self._set_state(CallState.CALLING)
            await self._send(
                OfferMessage(sender=self._local_user_id, to=peer_id, sdp=sdp, is_video_call=is_video)
            )

    async def accept_incoming(self) -> None:
        async with self._lock:
            if self._state is not CallState.RINGING or self._remote_offer_sdp is None:
                raise SessionStateError(f"No incoming call to accept while {self._state.value}.")
            peer = self._require_peer()
            if not await self._acknowledge_remote_description(self._remote_offer_sdp, "offer"):
                self._end()
                await self._send(RejectMessage(sender=self._local_user_id, to=peer, call_id=self._call_id))
                return
            self._set_state(CallState.CONNECTED)
            sdp = await self._pc.create_answer()
            await self._send(
                AnswerMessage(
                    sender=self._local_user_id,
                    to=self._require_peer(),
                    sdp=sdp,
                    call_id=self._call_id,
                )
            )

    async def reject(self) -> None:
        async with self._lock:
            if self._state is not CallState.RINGING:
                raise SessionStateError(f"Cannot reject while {self._state.value}.")
            peer = self._require_peer()
            self._end()
            await self._send(RejectMessage(sender=self._local_user_id, to=peer, call_id=self._call_id))

    async def hangup(self) -> None:
        async with self._lock:
            if self._state in (CallState.IDLE, CallState.ENDED):
                return
            peer = self._require_peer()
            self._end()
            await self._send(HangupMessage(sender=self._local_user_id, to=peer, call_id=self._call_id))

    async def send_local_candidate(self, candidate: IceCandidate) -> None:
        """Forward a locally gathered ICE candidate to the peer."""

        if self._peer_id is None or self._state is CallState.ENDED:
            return
        await self._send(
            CandidateMessage(
                sender=self._local_user_id,
                to=self._peer_id,
                candidate=candidate,
                call_id=self._call_id,
            )
        )

    async def send_emoji(self, emoji: str) -> None:
        if self._state is not CallState.CONNECTED:
            raise SessionStateError("Reactions can only be sent during a connected call.")
        await self._send(
            EmojiMessage(sender=self._local_user_id, to=self._require_peer(), emoji=emoji, call_id=self._call_id)
        )

    # Remote events

    async def handle(self, message: PeerMessage) -> None:
        """Dispatch one decoded inbound message; invalid ones are logged and dropped."""

        try:
            if isinstance(message, OfferMessage):
                await self.on_offer(message)
            elif isinstance(message, AnswerMessage):
                await self.on_answer(message)
            elif isinstance(message, CandidateMessage):
                await self.on_candidate(message)
            elif isinstance(message, RejectMessage):
                await self.on_reject(message)
            elif isinstance(message, HangupMessage):
                await self.on_hangup(message)
            elif isinstance(message, EmojiMessage):
                self.on_emoji(message)
        except SignalingError as exc:
            LOGGER.warning("Dropping %s from %s: %s", message.type, message.sender, exc.detail)

    async def on_offer(self, message: OfferMessage) -> None:
        async with self._lock:
            if self._state is not CallState.IDLE:
                raise SessionStateError(f"Ignoring offer while {self._state.value}.")
            self._peer_id = message.sender
            self._is_video = message.is_video_call
            self._remote_offer_sdp = message.sdp
            self._adopt_call_id(message.call_id)
            self._set_state(CallState.RINGING)

    async def on_answer(self, message: AnswerMessage) -> None:
        async with self._lock:
            self._check_peer(message.sender, message.call_id)
            if self._state is not CallState.CALLING:
                raise SessionStateError(f"Unexpected answer while {self._state.value}.")
            self._adopt_call_id(message.call_id)
            if not await self._acknowledge_remote_description(message.sdp, "answer"):
                self._end()
                await self._send(HangupMessage(sender=self._local_user_id, to=message.sender, call_id=self._call_id))
                return
            self._set_state(CallState.CONNECTED)

    async def on_candidate(self, message: CandidateMessage) -> None:
        async with self._lock:
            self._check_peer(message.sender, message.call_id)
            if self._state is CallState.ENDED:
                raise SessionStateError("Candidate for an ended call.")
            if self._remote_description_set:
                await self._pc.add_ice_candidate(message.candidate)
            else:
                self._pending_candidates.append(message.candidate)
                LOGGER.debug("Queued ICE candidate (%d pending)", len(self._pending_candidates))

    async def on_reject(self, message: RejectMessage) -> None:
        async with self._lock:
            self._check_peer(message.sender, message.call_id)
            if self._state is not CallState.CALLING:
                raise SessionStateError(f"Unexpected reject while {self._state.value}.")
            self._end()

    async def on_hangup(self, message: HangupMessage) -> None:
        async with self._lock:
            self._check_peer(message.sender, message.call_id)
            if self._state in (CallState.IDLE, CallState.ENDED):
                raise SessionStateError(f"Unexpected hangup while {self._state.value}.")
            self._end()

    def on_emoji(self, message: EmojiMessage) -> None:
        self._check_peer(message.sender, message.call_id)
        if self._listener is not None:
            self._listener.on_emoji(message.sender, message.emoji)

    def on_transport_error(self, error: str) -> None:
        """Surface a lost connection; in-flight offers/answers are not retried."""

        LOGGER.error("Signaling transport error during %s call: %s", self._state.value, error)
        if self._listener is not None:
            self._listener.on_connection_error(error)

    # Internals

    async def _acknowledge_remote_description(self, sdp: str, kind: Literal["offer", "answer"]) -> bool:
        try:
            await self._pc.set_remote_description(sdp, kind)
        except Exception:
            LOGGER.exception("Failed to set remote %s description", kind)
            return False

        self._remote_description_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        LOGGER.debug("Draining %d pending ICE candidates", len(pending))
        for candidate in pending:
            await self._pc.add_ice_candidate(candidate)
        return True

    def _adopt_call_id(self, call_id: str | None) -> None:
        if self._call_id is None and call_id:
            self._call_id = call_id

    def _check_peer(self, sender: str, call_id: str | None) -> None:
        if self._peer_id is None or sender != self._peer_id:
            raise SessionStateError(f"No active call with {sender}.")
        if call_id and self._call_id and call_id != self._call_id:
            raise SessionStateError(f"Unknown call id {call_id}.")

    def _require_peer(self) -> str:
        if self._peer_id is None:
            raise SessionStateError("No peer for the current call.")
        return self._peer_id

    def _end(self) -> None:
        self._pending_candidates.clear()
        self._set_state(CallState.ENDED)

    def _set_state(self, state: CallState) -> None:
        if state is self._state:
            return
        LOGGER.info("Call state %s -> %s (peer=%s, call_id=%s)", self._state.value, state.value, self._peer_id, self._call_id)
        self._state = state
        if self._listener is not None:
            self._listener.on_state_changed(state)

    async def _send(self, message: WireModel) -> None:
        try:
            await self._send_fn(message)
        except TransportError as exc:
            self.on_transport_error(exc.detail)
