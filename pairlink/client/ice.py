"""ICE server discovery for the peer client."""
from __future__ import annotations

import logging
from typing import Any

import httpx
from aiortc import RTCConfiguration, RTCIceServer

logger = logging.getLogger(__name__)

FALLBACK_ICE_SERVERS: list[dict[str, Any]] = [{"urls": ["stun:stun.l.google.com:19302"]}]


async def fetch_ice_servers(
    base_url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = 5.0,
) -> list[dict[str, Any]]:
    """Fetch TURN credentials, degrading to public STUN on any failure."""

    url = f"{base_url.rstrip('/')}/turn-credentials"
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as owned:
                response = await owned.get(url)
        else:
            response = await client.get(url)
        response.raise_for_status()
        servers = response.json().get("iceServers")
    except (httpx.HTTPError, ValueError, AttributeError) as exc:
        logger.warning("TURN credential fetch failed, using STUN only: %s", exc)
        return list(FALLBACK_ICE_SERVERS)

    if not servers:
        logger.warning("TURN credential response had no iceServers, using STUN only")
        return list(FALLBACK_ICE_SERVERS)

    logger.info("Received %d ICE server entries", len(servers))
    return servers


def to_rtc_configuration(servers: list[dict[str, Any]]) -> RTCConfiguration:
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(
                urls=server["urls"],
                username=server.get("username"),
                credential=server.get("credential"),
            )
            for server in servers
        ]
    )
