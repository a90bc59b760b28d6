"""Time-limited TURN credentials (TURN REST API scheme).

username = "<expiry epoch seconds>:<user id>"
password = base64(HMAC-SHA1(secret, username))
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time

from pydantic import BaseModel, Field


class TurnCredentials(BaseModel):
    username: str
    password: str
    ttl: int = Field(gt=0)
    uris: list[str]


def sign_username(secret: str, username: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def issue_turn_credentials(
    user_id: str,
    *,
    secret: str,
    ttl: int,
    uris: list[str],
    now: float | None = None,
) -> TurnCredentials:
    issued_at = int(time.time() if now is None else now)
    username = f"{issued_at + ttl}:{user_id}"
    return TurnCredentials(username=username, password=sign_username(secret, username), ttl=ttl, uris=list(uris))
