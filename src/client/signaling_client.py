"""Websocket transport between a client and the relay server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from config.settings import get_settings
from signaling.errors import ProtocolError, TransportError
from signaling.messages import (
    CheckUserMessage,
    GetUsersMessage,
    JoinMessage,
    PeerMessage,
    UserListMessage,
    UserStatusMessage,
    WireModel,
    decode_message,
    encode_message,
)

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[PeerMessage], Awaitable[None]]


class ClientListener(Protocol):
    def on_user_list(self, users: list[str]) -> None: ...

    def on_connection_error(self, error: str) -> None: ...


class SignalingClient:
    """Registers with the relay, sends signaling messages and dispatches replies.

    Connection loss is reported once through ``on_connection_error``; nothing is
    retried. Reconnecting means calling :meth:`connect` again, which re-sends
    ``join``.
    """

    def __init__(
        self,
        user_id: str,
        *,
        url: str | None = None,
        on_message: MessageHandler | None = None,
        listener: ClientListener | None = None,
        presence_timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._user_id = user_id
        self._url = url or settings.signaling_url
        self._on_message = on_message
        self._listener = listener
        self._presence_timeout = presence_timeout or settings.presence_query_timeout_seconds
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._closing = False
        self._online_users: set[str] = set()
        self._status_waiters: dict[str, asyncio.Future[bool]] = {}

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def online_users(self) -> set[str]:
        return set(self._online_users)

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._on_message = handler

    async def connect(self) -> None:
        try:
            ws = await websockets.connect(self._url, ping_interval=15, ping_timeout=15)
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            LOGGER.error("Could not connect to signaling server %s: %s", self._url, exc)
            self._report_error(str(exc) or "Connection failed")
            raise TransportError(f"Connection to {self._url} failed") from exc
        await self.attach(ws)

    async def attach(self, ws: Any) -> None:
        """Adopt an open websocket, register the user and start reading."""

        await self.close()
        self._closing = False
        self._ws = ws
        LOGGER.info("Connected to signaling server as %s", self._user_id)
        await self.send(JoinMessage(user_id=self._user_id))
        self._reader = asyncio.create_task(self._read_loop(ws))

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        self._closing = True
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None
        if ws is not None:
            await ws.close()
        self._online_users.clear()
        self._fail_waiters()

    async def send(self, message: WireModel) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError("Not connected to the signaling server.")
        try:
            await ws.send(encode_message(message))
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(f"Failed to send {type(message).__name__}: {exc}") from exc

    async def request_users(self) -> None:
        await self.send(GetUsersMessage(sender=self._user_id))

    async def check_user_online(self, user_id: str) -> bool:
        """Ask the relay whether ``user_id`` is registered; ``False`` on timeout."""

        if user_id in self._online_users:
            return True
        if self._ws is None:
            LOGGER.warning("Not connected; cannot check whether %s is online", user_id)
            return False

        waiter = self._status_waiters.get(user_id)
        if waiter is None or waiter.done():
            waiter = asyncio.get_running_loop().create_future()
            self._status_waiters[user_id] = waiter
            try:
                await self.send(CheckUserMessage(user_id=user_id))
            except TransportError:
                self._status_waiters.pop(user_id, None)
                return False

        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=self._presence_timeout)
        except asyncio.TimeoutError:
            LOGGER.info("Timed out waiting for presence of %s", user_id)
            return False
        finally:
            if self._status_waiters.get(user_id) is waiter:
                del self._status_waiters[user_id]
                if not waiter.done():
                    waiter.cancel()

    async def _read_loop(self, ws: Any) -> None:
        error = "Connection closed"
        try:
            async for raw in ws:
                await self._dispatch(raw)
        except ConnectionClosed as exc:
            error = str(exc) or error
        except OSError as exc:
            error = str(exc) or error
        if not self._closing:
            LOGGER.error("Signaling connection lost: %s", error)
            self._ws = None
            self._fail_waiters()
            self._report_error(error)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = decode_message(raw)
        except ProtocolError as exc:
            LOGGER.warning("Dropping inbound message: %s", exc.detail)
            return

        if isinstance(message, UserListMessage):
            self._online_users = set(message.users)
            if self._listener is not None:
                self._listener.on_user_list([u for u in message.users if u != self._user_id])
        elif isinstance(message, UserStatusMessage):
            if message.online:
                self._online_users.add(message.user_id)
            waiter = self._status_waiters.get(message.user_id)
            if waiter is not None and not waiter.done():
                waiter.set_result(message.online)
        elif self._on_message is not None and message.type in {
            "offer",
            "answer",
            "candidate",
            "reject",
            "hangup",
            "emoji",
        }:
            try:
                await self._on_message(message)
            except Exception:
                LOGGER.exception("Handler failed for %s message", message.type)
        else:
            LOGGER.debug("Ignoring %s message", message.type)

    def _fail_waiters(self) -> None:
        for waiter in self._status_waiters.values():
            if not waiter.done():
                waiter.set_result(False)
        self._status_waiters.clear()

    def _report_error(self, error: str) -> None:
        if self._listener is not None:
            self._listener.on_connection_error(error)
