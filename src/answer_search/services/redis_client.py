"""Async Redis client wrapper for query statistics."""

from __future__ import annotations

from typing import Any

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)

_PREFIX = "answer_search"


class RedisClient:
    """Thin wrapper around ``redis.asyncio.Redis`` keeping pipeline counters.

    Counter writes never raise; a Redis outage must not fail a search.

    Args:
        url: Redis connection URL, e.g. ``"redis://localhost:6379/0"``.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._redis: Redis | None = None

    async def connect(self) -> None:
        """Open the connection pool."""
        self._redis = Redis.from_url(self._url, decode_responses=True)
        logger.info("redis.connected", url=self._url)

    async def disconnect(self) -> None:
        """Close the connection pool gracefully."""
        if self._redis:
            await self._redis.aclose()
            logger.info("redis.disconnected")

    @property
    def _r(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("RedisClient not connected; call connect() first.")
        return self._redis

    async def ping(self) -> bool:
        """Return True if Redis responds to PING."""
        return await self._r.ping()

    async def increment_counter(self, name: str, amount: float = 1.0) -> None:
        """Atomically increment ``answer_search:<name>``.

        Args:
            name:   Counter name, e.g. ``"queries_total"``.
            amount: Increment amount (default 1).
        """
        try:
            await self._r.incrbyfloat(f"{_PREFIX}:{name}", amount)
        except Exception as exc:  # noqa: BLE001
            logger.warning("redis.increment_error", name=name, error=str(exc))

    async def record_search(
        self, strategy: str, mode: str, latency_ms: float, success: bool
    ) -> None:
        """Update all counters for one finished pipeline execution."""
        await self.increment_counter("queries_total")
        await self.increment_counter("total_latency_ms", latency_ms)
        await self.increment_counter(f"queries_by_strategy:{strategy}")
        await self.increment_counter(f"queries_by_mode:{mode}")
        if not success:
            await self.increment_counter("errors_total")

    async def _group(self, group: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        async for key in self._r.scan_iter(f"{_PREFIX}:{group}:*"):
            name = key.rsplit(":", 1)[1]
            counts[name] = int(float(await self._r.get(key) or 0))
        return counts

    async def get_stats(self) -> dict[str, Any]:
        """Collect all counters.

        Returns:
            Dict with ``queries_total``, ``errors_total``, ``total_latency_ms``,
            ``queries_by_strategy`` and ``queries_by_mode``.
        """
        queries_total = float(await self._r.get(f"{_PREFIX}:queries_total") or 0)
        errors_total = float(await self._r.get(f"{_PREFIX}:errors_total") or 0)
        total_latency = float(await self._r.get(f"{_PREFIX}:total_latency_ms") or 0)

        return {
            "queries_total": int(queries_total),
            "errors_total": int(errors_total),
            "total_latency_ms": total_latency,
            "queries_by_strategy": await self._group("queries_by_strategy"),
            "queries_by_mode": await self._group("queries_by_mode"),
        }
