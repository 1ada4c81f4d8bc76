"""
Liveness Monitor
================
Watchdog that reclaims connections which died without a clean close.

Every sweep:
- closes and unregisters connections with no liveness ack within the timeout
- sends a protocol ping to the rest; the pong refreshes their ack

Eviction is logged, never reported to clients.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Set

import structlog
from prometheus_client import Counter

from registry import ConnectionInfo, SubscriptionRegistry

logger = structlog.get_logger(__name__)


evictions_total = Counter(
    'realtime_liveness_evictions_total',
    'Connections closed for missing liveness acks'
)


DEFAULT_INTERVAL = 30.0  # seconds
DEFAULT_TIMEOUT = 60.0   # seconds
CLOSE_TIMEOUT = 2.0      # seconds


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LivenessMonitor:
    """Periodic stale-connection sweep over a SubscriptionRegistry."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow,
        on_evict: Optional[Callable[[ConnectionInfo], None]] = None
    ):
        self.registry = registry
        self.interval = interval
        self.timeout = timeout
        self.on_evict = on_evict
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._probes: Set[asyncio.Task] = set()
        self._active = False

        self.sweep_count = 0
        self.eviction_count = 0

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start the sweep loop."""
        if self._active:
            return

        self._active = True
        self._task = asyncio.create_task(self._run())
        logger.info("liveness_monitor_started", interval=self.interval, timeout=self.timeout)

    async def stop(self):
        """Stop the sweep loop and any probes still waiting for a pong."""
        self._active = False

        tasks = list(self._probes)
        if self._task and not self._task.done():
            tasks.append(self._task)

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await asyncio.wait_for(task, timeout=CLOSE_TIMEOUT)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        self._probes.clear()
        logger.info("liveness_monitor_stopped", sweeps=self.sweep_count, evictions=self.eviction_count)

    async def _run(self):
        try:
            while self._active:
                await asyncio.sleep(self.interval)
                try:
                    await self.sweep()
                except Exception as e:
                    logger.error("liveness_sweep_failed", error=str(e), exc_info=True)
        except asyncio.CancelledError:
            logger.debug("liveness_loop_cancelled")

    # ========================================================================
    # SWEEP
    # ========================================================================

    async def sweep(self, now: Optional[datetime] = None) -> List[int]:
        """
        Run one sweep.

        Returns:
            Ids of the connections evicted by this sweep
        """
        now = now or self._clock()
        self.sweep_count += 1

        evicted = []
        for connection_id in sorted(self.registry.all_stale(now, self.timeout)):
            if await self._evict(connection_id, now):
                evicted.append(connection_id)

        for connection_id in sorted(self.registry.connection_ids()):
            channel = self.registry.channel_for(connection_id)
            if channel is None:
                continue
            probe = asyncio.create_task(self._probe(connection_id, channel))
            self._probes.add(probe)
            probe.add_done_callback(self._probes.discard)

        if evicted:
            logger.info("liveness_sweep", evicted=evicted, remaining=len(self.registry))
        return evicted

    async def wait_for_probes(self):
        """Wait until every outstanding probe has resolved or given up."""
        if self._probes:
            await asyncio.gather(*list(self._probes), return_exceptions=True)

    async def _evict(self, connection_id: int, now: datetime) -> bool:
        channel = self.registry.channel_for(connection_id)
        info = self.registry.unregister(connection_id)
        if info is None:
            # Already gone (closed normally or dropped by the broadcaster)
            return False

        self.eviction_count += 1
        evictions_total.inc()
        logger.warning(
            "connection_evicted",
            connection_id=connection_id,
            venue_id=info.venue_id,
            silent_seconds=(now - info.last_liveness_ack).total_seconds()
        )

        if channel is not None:
            await self._close(connection_id, channel)

        if self.on_evict is not None:
            try:
                self.on_evict(info)
            except Exception as e:
                logger.error("on_evict_failed", connection_id=connection_id, error=str(e), exc_info=True)

        return True

    async def _close(self, connection_id: int, channel: Any):
        try:
            await asyncio.wait_for(channel.close(1001, "Liveness timeout"), timeout=CLOSE_TIMEOUT)
        except Exception as e:
            logger.debug("evicted_close_failed", connection_id=connection_id, error=repr(e))

    async def _probe(self, connection_id: int, channel: Any):
        """Ping one connection and refresh its ack when the pong arrives."""
        try:
            pong_waiter = await channel.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # No pong this round; the next sweep decides on eviction
            logger.debug("liveness_probe_unanswered", connection_id=connection_id, error=repr(e))
            return

        self.registry.touch_liveness(connection_id)

    def get_stats(self) -> dict:
        return {
            "active": self._active,
            "interval": self.interval,
            "timeout": self.timeout,
            "sweeps": self.sweep_count,
            "evictions": self.eviction_count,
            "pendingProbes": len(self._probes),
        }

    def __repr__(self):
        return f"<LivenessMonitor interval={self.interval} timeout={self.timeout}>"
