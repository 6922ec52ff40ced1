from __future__ import annotations

import os
from typing import Any, Dict, List

from pydantic import BaseModel, Field

ENV_PREFIX = "PEERDROP_"


class Settings(BaseModel):
    """Tunables for negotiation, traversal server ranking and transfers.

    Durations are seconds, sizes are bytes.
    """

    # Connection lifecycle
    connection_timeout: float = Field(15.0, gt=0)
    slow_connection_threshold: float = Field(5.0, gt=0)
    ice_restart_delay: float = Field(2.0, ge=0)
    max_ice_restarts: int = Field(2, ge=0)
    disconnected_timeout: float = Field(5.0, ge=0)

    # Transfer
    chunk_size: int = Field(64 * 1024, gt=0)
    buffer_threshold: int = Field(1024 * 1024, gt=0)
    drain_poll_interval: float = Field(0.01, gt=0)
    relay_chunk_delay: float = Field(0.01, ge=0)

    # Traversal servers
    ice_servers_url: str = "http://localhost:8787/api/ice-servers"
    ice_servers_ttl: float = Field(300.0, ge=0)
    stun_probe_timeout: float = Field(2.0, gt=0)
    directory_timeout: float = Field(3.0, gt=0)
    fallback_ice_servers: List[str] = ["stun:stun.l.google.com:19302"]

    # Signaling
    signaling_url: str = "ws://localhost:8787/ws"

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        """Build settings from PEERDROP_* environment variables plus explicit overrides."""
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.environ.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name == "fallback_ice_servers":
                values[name] = [url.strip() for url in raw.split(",") if url.strip()]
            else:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
