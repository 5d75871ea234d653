"""Time-limited TURN credentials using the shared-secret REST scheme.

The username is the expiry timestamp and the password is the base64 HMAC-SHA1
of that username keyed with the TURN server's static auth secret, which is what
coturn's ``use-auth-secret`` mode recomputes on every allocation.
"""
from __future__ import annotations

import base64
import hmac
import logging
import time
from dataclasses import dataclass, field
from hashlib import sha1
from typing import Sequence

logger = logging.getLogger(__name__)

DEFAULT_STUN_URLS = ("stun:stun.l.google.com:19302",)
TURN_PORT = 3478
TURNS_PORT = 5349


@dataclass(slots=True)
class IceServer:
    urls: list[str]
    username: str | None = None
    credential: str | None = None


@dataclass(slots=True)
class TurnCredential:
    username: str
    password: str
    ttl_seconds: int
    ice_servers: list[IceServer] = field(default_factory=list)


def sign(secret: str, username: str) -> str:
    """Return the base64 HMAC-SHA1 of ``username`` keyed with ``secret``."""

    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def turn_urls(host: str) -> list[str]:
    return [
        f"turn:{host}:{TURN_PORT}?transport=udp",
        f"turn:{host}:{TURN_PORT}?transport=tcp",
        f"turns:{host}:{TURNS_PORT}?transport=tcp",
    ]


def issue(
    secret: str,
    realm: str,
    ttl_seconds: int,
    *,
    now: float | None = None,
    host: str | None = None,
    stun_urls: Sequence[str] = DEFAULT_STUN_URLS,
) -> TurnCredential:
    """Produce a credential valid for ``ttl_seconds`` from ``now``.

    Without a secret the credential is still well formed, but the TURN entry is
    left out so clients go straight to STUN-only connectivity.
    """

    current = int(time.time() if now is None else now)
    username = str(current + ttl_seconds)
    password = sign(secret, username)

    ice_servers = [IceServer(urls=list(stun_urls))]
    if secret:
        ice_servers.append(IceServer(urls=turn_urls(host or realm), username=username, credential=password))
    else:
        logger.warning("TURN secret is not configured; issuing STUN-only ICE servers")

    return TurnCredential(username=username, password=password, ttl_seconds=ttl_seconds, ice_servers=ice_servers)


def verify_credential(secret: str, username: str, password: str, *, now: float | None = None) -> bool:
    """Check a credential the same way the TURN server does."""

    try:
        expiry = int(username.split(":", 1)[0])
    except ValueError:
        return False
    current = time.time() if now is None else now
    if expiry <= current:
        return False
    return hmac.compare_digest(sign(secret, username), password)
