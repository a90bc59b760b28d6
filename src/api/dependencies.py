"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache

from db.repository import CallRepository
from relay.server import RelayServer


@lru_cache(maxsize=1)
def get_repository() -> CallRepository:
    return CallRepository()


@lru_cache(maxsize=1)
def _relay_factory() -> RelayServer:
    return RelayServer(get_repository())


def get_relay() -> RelayServer:
    return _relay_factory()
