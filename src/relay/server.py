"""Presence and call relay.

The relay keeps two in-memory tables: who is online (one connection per user
id) and which calls are active. Both are guarded by one lock. Peer messages are
routed to the addressed user; offers, answers, rejects, hangups and abrupt
disconnects drive the call table and produce outcome records that are handed
to storage without blocking the connection that triggered them.

Note: this is a single-process store. Multiple workers would need a shared
presence table.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from db.repository import CallOutcome
from signaling.errors import PersistenceError, ProtocolError, SessionStateError
from signaling.messages import (
    AnswerMessage,
    CallStatsMessage,
    CandidateMessage,
    CheckUserMessage,
    EmojiMessage,
    GetUsersMessage,
    HangupMessage,
    JoinMessage,
    OfferMessage,
    RejectMessage,
    UserListMessage,
    UserStatusMessage,
    WireModel,
    decode_message,
    encode_message,
)

LOGGER = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class OutcomeSink(Protocol):
    async def record_outcome(self, outcome: CallOutcome) -> Any: ...

    async def record_call_stats(self, stats: CallStatsMessage, *, reported_by: str | None = None) -> Any: ...


class CallStatus(str, Enum):
    MISSED = "missed"
    REJECTED = "rejected"
    COMPLETED = "completed"


@dataclass(slots=True)
class CallSession:
    call_id: str
    caller_id: str
    callee_id: str
    is_video: bool
    start_time: float
    state: str = "ringing"
    answered_at: float | None = None

    def involves(self, user_id: str) -> bool:
        return user_id in (self.caller_id, self.callee_id)

    def between(self, a: str, b: str) -> bool:
        return {self.caller_id, self.callee_id} == {a, b}


class RelayServer:
    """Routes signaling between connected users and records call outcomes."""

    def __init__(self, repository: OutcomeSink | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self._repository = repository
        self._clock = clock
        self._lock = asyncio.Lock()
        self._presence: dict[str, Connection] = {}
        self._calls: dict[str, CallSession] = {}
        self._tasks: set[asyncio.Task] = set()

    # Read-only views

    def online_users(self) -> list[str]:
        return sorted(self._presence)

    def connection_for(self, user_id: str) -> Connection | None:
        return self._presence.get(user_id)

    def active_calls(self) -> list[CallSession]:
        return list(self._calls.values())

    def user_for(self, connection: Connection) -> str | None:
        for user_id, registered in self._presence.items():
            if registered is connection:
                return user_id
        return None

    # Connection lifecycle

    async def handle(self, connection: Connection, raw: str | bytes) -> None:
        """Process one inbound frame. Malformed frames are logged and dropped."""

        try:
            message = decode_message(raw)
        except ProtocolError as exc:
            LOGGER.warning("Dropping malformed message: %s", exc.detail)
            return

        try:
            await self._dispatch(connection, message)
        except SessionStateError as exc:
            LOGGER.warning("Dropping %s from %s: %s", message.type, getattr(message, "sender", "?"), exc.detail)

    async def _dispatch(self, connection: Connection, message: WireModel) -> None:
        if isinstance(message, JoinMessage):
            await self._on_join(connection, message)
        elif isinstance(message, GetUsersMessage):
            await self._send(connection, UserListMessage(users=self.online_users()))
        elif isinstance(message, CheckUserMessage):
            online = message.user_id in self._presence
            await self._send(connection, UserStatusMessage(user_id=message.user_id, online=online))
        elif isinstance(message, OfferMessage):
            await self._on_offer(message)
        elif isinstance(message, AnswerMessage):
            await self._on_answer(message)
        elif isinstance(message, (CandidateMessage, EmojiMessage)):
            await self._forward(message.to, message)
        elif isinstance(message, RejectMessage):
            await self._on_reject(message)
        elif isinstance(message, HangupMessage):
            await self._on_hangup(message)
        elif isinstance(message, CallStatsMessage):
            self._persist_stats(message, reported_by=self.user_for(connection))
        else:
            LOGGER.warning("Ignoring server-bound %s message", message.type)

    async def disconnect(self, connection: Connection) -> None:
        """Drop a closed connection; any active call it took part in ends as missed."""

        async with self._lock:
            user_id = self.user_for(connection)
            if user_id is None:
                return
            del self._presence[user_id]
            now = self._clock()
            ended = [session for session in self._calls.values() if session.involves(user_id)]
            for session in ended:
                del self._calls[session.call_id]
                self._finalize(session, CallStatus.MISSED, duration=0.0, end_time=now)
            users = self.online_users()

        LOGGER.info("User %s disconnected (%d call(s) ended)", user_id, len(ended))
        await self._broadcast(UserListMessage(users=users))

    async def drain(self) -> None:
        """Wait for pending storage writes."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Handlers

    async def _on_join(self, connection: Connection, message: JoinMessage) -> None:
        async with self._lock:
            # A connection is registered under at most one user id.
            for user_id in [u for u, c in self._presence.items() if c is connection and u != message.user_id]:
                LOGGER.info("Connection re-registered: %s -> %s", user_id, message.user_id)
                del self._presence[user_id]
            previous = self._presence.get(message.user_id)
            if previous is connection:
                previous = None
            self._presence[message.user_id] = connection
            users = self.online_users()

        if previous is not None:
            LOGGER.info("Replacing existing connection for %s", message.user_id)
            try:
                await previous.close(code=1000)
            except Exception as exc:
                LOGGER.warning("Closing previous connection for %s failed: %s", message.user_id, exc)

        LOGGER.info("User %s joined (%d online)", message.user_id, len(users))
        await self._broadcast(UserListMessage(users=users))

    async def _on_offer(self, message: OfferMessage) -> None:
        async with self._lock:
            session = CallSession(
                call_id=uuid.uuid4().hex,
                caller_id=message.sender,
                callee_id=message.to,
                is_video=message.is_video_call,
                start_time=self._clock(),
            )
            self._calls[session.call_id] = session
            target = self._presence.get(message.to)

        LOGGER.info("Call %s: %s -> %s (video=%s)", session.call_id, session.caller_id, session.callee_id, session.is_video)
        if target is None:
            LOGGER.info("Callee %s is offline; offer for %s dropped", message.to, session.call_id)
            return
        await self._send(target, message.model_copy(update={"call_id": session.call_id}))

    async def _on_answer(self, message: AnswerMessage) -> None:
        async with self._lock:
            session = self._lookup(message.call_id, message.sender, message.to)
            if session is not None:
                session.answered_at = self._clock()
                session.state = "active"
            target = self._presence.get(message.to)

        if session is None:
            LOGGER.warning("Answer from %s does not match an active call", message.sender)
            await self._deliver(target, message)
            return
        await self._deliver(target, message.model_copy(update={"call_id": session.call_id}))

    async def _on_reject(self, message: RejectMessage) -> None:
        async with self._lock:
            session = self._lookup(message.call_id, message.sender, message.to)
            if session is not None:
                del self._calls[session.call_id]
                self._finalize(session, CallStatus.REJECTED, duration=0.0, end_time=self._clock())
            target = self._presence.get(message.to)

        await self._deliver(target, self._with_call_id(message, session))

    async def _on_hangup(self, message: HangupMessage) -> None:
        async with self._lock:
            session = self._lookup(message.call_id, message.sender, message.to)
            if session is not None:
                del self._calls[session.call_id]
                now = self._clock()
                if session.answered_at is not None:
                    self._finalize(session, CallStatus.COMPLETED, duration=now - session.answered_at, end_time=now)
                else:
                    self._finalize(session, CallStatus.MISSED, duration=0.0, end_time=now)
            target = self._presence.get(message.to)

        await self._deliver(target, self._with_call_id(message, session))

    # Helpers

    def _lookup(self, call_id: str | None, a: str, b: str) -> CallSession | None:
        """Find the session a message refers to.

        An explicit call id must name an active call. Without one, the latest
        call between the two participants is used.
        """

        if call_id:
            session = self._calls.get(call_id)
            if session is None:
                raise SessionStateError(f"Unknown or ended call {call_id}")
            return session
        for session in reversed(list(self._calls.values())):
            if session.between(a, b):
                return session
        return None

    @staticmethod
    def _with_call_id(message: WireModel, session: CallSession | None) -> WireModel:
        if session is None:
            return message
        return message.model_copy(update={"call_id": session.call_id})

    def _finalize(self, session: CallSession, status: CallStatus, *, duration: float, end_time: float) -> None:
        outcome = CallOutcome(
            call_id=session.call_id,
            caller_id=session.caller_id,
            callee_id=session.callee_id,
            is_video=session.is_video,
            duration=max(0.0, duration),
            status=status.value,
            start_time=session.start_time,
            end_time=end_time,
        )
        LOGGER.info("Call %s ended: %s (%.1fs)", outcome.call_id, outcome.status, outcome.duration)
        if self._repository is not None:
            self._spawn(self._repository.record_outcome(outcome), f"outcome {outcome.call_id}")

    def _persist_stats(self, stats: CallStatsMessage, *, reported_by: str | None) -> None:
        LOGGER.info("Received call stats for %s from %s", stats.call_id, reported_by or "unknown")
        if self._repository is not None:
            self._spawn(self._repository.record_call_stats(stats, reported_by=reported_by), f"stats {stats.call_id}")

    def _spawn(self, coro, label: str) -> None:
        task = asyncio.get_running_loop().create_task(self._store(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _store(coro, label: str) -> None:
        try:
            await coro
        except PersistenceError as exc:
            LOGGER.error("Failed to store %s: %s", label, exc.detail)
        except Exception:
            LOGGER.exception("Unexpected error storing %s", label)

    async def _forward(self, user_id: str, message: WireModel) -> None:
        await self._deliver(self._presence.get(user_id), message)

    async def _deliver(self, target: Connection | None, message: WireModel) -> None:
        if target is None:
            LOGGER.info("Recipient offline; %s dropped", message.type)
            return
        await self._send(target, message)

    async def _broadcast(self, message: WireModel) -> None:
        for connection in list(self._presence.values()):
            await self._send(connection, message)

    @staticmethod
    async def _send(connection: Connection, message: WireModel) -> None:
        try:
            await connection.send_text(encode_message(message))
        except Exception as exc:
            LOGGER.warning("Failed to send %s: %s", message.type, exc)
