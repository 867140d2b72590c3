"""Contadores de cooldown e teto horário do correlacionador de alertas.

Duas implementações com a mesma interface:

- ``InMemoryAlertThrottle``: processo único (desenvolvimento/testes);
- ``RedisAlertThrottle``: compartilhado entre workers, com ``SET NX PX``
  para o cooldown e buckets ``INCR``/``EXPIRE`` por hora.
"""

from __future__ import annotations

import heapq
from datetime import datetime, timedelta
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from policy_engine.config import get_settings
from policy_engine.core.logging import get_logger

logger = get_logger(__name__)

_HOUR_SECONDS = 3600


def _hour_bucket(now: datetime) -> int:
    return int(now.timestamp() // _HOUR_SECONDS)


class InMemoryAlertThrottle:
    def __init__(self) -> None:
        self._cooldowns: dict[str, datetime] = {}
        # (expira_em, chave) em ordem de vencimento; entradas obsoletas são ignoradas.
        self._expiry_heap: list[tuple[datetime, str]] = []
        self._hourly: dict[tuple[str, int], int] = {}

    def __len__(self) -> int:
        return len(self._cooldowns)

    async def acquire_cooldown(self, key: str, now: datetime, period: timedelta) -> bool:
        """True quando não há cooldown ativo para ``key`` (e inicia um novo)."""
        self._expire(now)
        expires_at = self._cooldowns.get(key)
        if expires_at is not None and now < expires_at:
            return False
        self._cooldowns[key] = now + period
        heapq.heappush(self._expiry_heap, (now + period, key))
        return True

    def _expire(self, now: datetime) -> None:
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiry_heap)
            if self._cooldowns.get(key) == expires_at:
                del self._cooldowns[key]

    async def increment_hourly(self, rule_id: str, now: datetime) -> int:
        bucket = (rule_id, _hour_bucket(now))
        self._hourly[bucket] = self._hourly.get(bucket, 0) + 1
        # Buckets de horas passadas não voltam a ser consultados.
        for stale in [key for key in self._hourly if key[1] < bucket[1]]:
            del self._hourly[stale]
        return self._hourly[bucket]


class RedisAlertThrottle:
    """Throttle distribuído; em falha de Redis deixa o alerta passar."""

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "alerts") -> None:
        self._redis_url = redis_url or get_settings().redis_url
        self._prefix = prefix
        self._redis: Optional[aioredis.Redis] = None

    async def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def acquire_cooldown(self, key: str, now: datetime, period: timedelta) -> bool:
        ttl_ms = max(int(period.total_seconds() * 1000), 1)
        try:
            client = await self._client()
            acquired = await client.set(
                f"{self._prefix}:cooldown:{key}",
                now.isoformat(),
                nx=True,
                px=ttl_ms,
            )
        except RedisError as exc:
            logger.error("alert_throttle_unavailable", operation="cooldown", error=str(exc))
            return True
        return bool(acquired)

    async def increment_hourly(self, rule_id: str, now: datetime) -> int:
        bucket_key = f"{self._prefix}:hourly:{rule_id}:{_hour_bucket(now)}"
        try:
            client = await self._client()
            used = int(await client.incr(bucket_key))
            if used == 1:
                await client.expire(bucket_key, _HOUR_SECONDS)
        except RedisError as exc:
            logger.error("alert_throttle_unavailable", operation="hourly", error=str(exc))
            return 1
        return used

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
