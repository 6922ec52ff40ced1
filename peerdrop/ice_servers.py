"""Fetch, health-check and rank ICE (STUN/TURN) servers.

TURN servers need credentials and are kept in directory order. STUN servers are
probed in parallel; the ones that return a reflexive address are sorted by
latency, the rest are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx
import stun

from .config import Settings
from .models import ServerKind, TraversalServer

logger = logging.getLogger(__name__)

DEFAULT_STUN_PORT = 3478

# Returns the probe latency in seconds, or None if the server is unusable.
Probe = Callable[[TraversalServer, float], Awaitable[Optional[float]]]


def parse_stun_url(url: str) -> Tuple[str, int]:
    """``stun:host[:port][?transport=...]`` -> ``(host, port)``."""
    target = url.split(":", 1)[1].split("?", 1)[0]
    host, sep, port = target.rpartition(":")
    if not sep:
        return target, DEFAULT_STUN_PORT
    return host.strip("[]"), int(port)


async def stun_probe(server: TraversalServer, timeout: float) -> Optional[float]:
    """Ask the server for our reflexive address and time the round trip."""
    host, port = parse_stun_url(server.primary_url)
    started = time.monotonic()
    try:
        _nat_type, external_ip, _external_port = await asyncio.wait_for(
            asyncio.to_thread(
                stun.get_ip_info, source_port=0, stun_host=host, stun_port=port
            ),
            timeout,
        )
    except asyncio.TimeoutError:
        logger.debug(f"STUN {server.primary_url} timed out after {timeout}s")
        return None
    except Exception as e:
        logger.warning(f"STUN {server.primary_url} failed: {e}")
        return None
    if not external_ip:
        return None
    return time.monotonic() - started


async def fetch_directory(url: str, timeout: float) -> List[TraversalServer]:
    """Query the ICE server directory (``{"iceServers": [...]}``)."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(url)
        response.raise_for_status()
        body = response.json()
    if not isinstance(body, dict):
        raise ValueError(f"ICE server directory returned {type(body).__name__}, expected an object")
    entries = body.get("iceServers", [])
    if not isinstance(entries, list):
        raise ValueError("ICE server directory field iceServers is not a list")
    return [TraversalServer.model_validate(entry) for entry in entries]


async def rank_servers(
    servers: List[TraversalServer], probe: Probe, timeout: float
) -> List[TraversalServer]:
    turn = [s for s in servers if s.kind is ServerKind.RELAY]
    stun_servers = [s for s in servers if s.kind is ServerKind.REFLEXIVE]

    logger.info(f"Checking {len(stun_servers)} STUN servers...")
    latencies = await asyncio.gather(*(probe(s, timeout) for s in stun_servers))

    ranked = []
    for server, latency in zip(stun_servers, latencies):
        if latency is None:
            continue
        ranked.append(server.model_copy(update={"latency": latency}))
    ranked.sort(key=lambda s: s.latency)
    for server in ranked:
        logger.debug(f"STUN {server.primary_url} responded in {server.latency * 1000:.0f}ms")

    unreachable = len(stun_servers) - len(ranked)
    if unreachable:
        logger.info(f"{unreachable} STUN servers unreachable")
    return turn + ranked


class IceServerCache:
    """Process-wide ranked server list with TTL and single-flight refresh."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        probe: Probe = stun_probe,
        directory: Optional[Callable[[], Awaitable[List[TraversalServer]]]] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.probe = probe
        self.directory = directory or self._fetch_directory
        self._servers: Optional[List[TraversalServer]] = None
        self._fetched_at = 0.0
        self._inflight: Optional[asyncio.Future] = None

    @property
    def fallback(self) -> List[TraversalServer]:
        return [TraversalServer(urls=[url]) for url in self.settings.fallback_ice_servers]

    def invalidate(self) -> None:
        self._servers = None
        self._fetched_at = 0.0

    def _is_fresh(self) -> bool:
        return (
            self._servers is not None
            and time.monotonic() - self._fetched_at < self.settings.ice_servers_ttl
        )

    async def get(self, force_refresh: bool = False) -> List[TraversalServer]:
        if not force_refresh and self._is_fresh():
            return list(self._servers)
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
            self._inflight.add_done_callback(self._clear_inflight)
        return list(await asyncio.shield(self._inflight))

    def _clear_inflight(self, _future: asyncio.Future) -> None:
        self._inflight = None

    async def _fetch_directory(self) -> List[TraversalServer]:
        return await fetch_directory(
            self.settings.ice_servers_url, self.settings.directory_timeout
        )

    async def _refresh(self) -> List[TraversalServer]:
        try:
            servers = await self.directory()
            logger.info(f"Fetched {len(servers)} ICE servers from directory")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to fetch ICE servers: {e}; using fallback")
            return self.fallback

        ranked = await rank_servers(servers, self.probe, self.settings.stun_probe_timeout)
        if not ranked:
            logger.warning("No usable ICE servers; using fallback")
            return self.fallback

        self._servers = ranked
        self._fetched_at = time.monotonic()
        logger.info(f"ICE servers ranked: {len(ranked)} available")
        return list(ranked)
