"""Redis manager with logical DB separation.

DB layout:
  - DB 0: cache (tenant-prefixed entries + tag sets)
  - DB 2: events (pub/sub channel for cross-process invalidation)

Key patterns:
  - {prefix}:t:{tenant_id}:{entity}:id:{id}       — single entity
  - {prefix}:t:{tenant_id}:{entity}:list:{hash}   — list query
  - {prefix}:tag:{tenant_id}:{entity}              — tag set of dependent keys
  - {prefix}:xtag:{tenant_id}                      — consultant entries covering a tenant

At scale, each role moves to a separate Redis cluster.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import redis.asyncio as aioredis

from lexcore.config import CoreSettings


class RedisRole(Enum):
    CACHE = "cache"    # DB 0: tenant cache
    EVENTS = "events"  # DB 2: change-event pub/sub


@dataclass
class RedisConfig:
    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    db_cache: int = 0
    db_events: int = 2
    max_connections: int = 20
    socket_timeout: float = 1.0

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> RedisConfig:
        return cls(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db_cache=settings.redis_db_cache,
            db_events=settings.redis_db_events,
            max_connections=settings.redis_max_connections,
        )


class RedisManager:
    """Manages Redis connections with logical DB separation."""

    _DB_MAP = {
        RedisRole.CACHE: "db_cache",
        RedisRole.EVENTS: "db_events",
    }

    def __init__(self, config: RedisConfig) -> None:
        self.config = config
        self._pools: dict[RedisRole, aioredis.Redis] = {}

    def get_url(self, role: RedisRole) -> str:
        db_num = getattr(self.config, self._DB_MAP[role])
        auth = f":{self.config.password}@" if self.config.password else ""
        return f"redis://{auth}{self.config.host}:{self.config.port}/{db_num}"

    async def get_client(self, role: RedisRole) -> aioredis.Redis:
        if role not in self._pools:
            self._pools[role] = aioredis.from_url(
                self.get_url(role),
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_timeout,
                decode_responses=False,
            )
        return self._pools[role]

    async def close(self) -> None:
        for pool in self._pools.values():
            await pool.aclose()
        self._pools.clear()
