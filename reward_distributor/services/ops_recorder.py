"""
Ops recording: cumulative airdrop totals and best-effort publishing of the
latest claim / swap / airdrop to the dashboard's ops endpoint.

Totals are credited at most once per cycle id. The dedup key lives in the
store (Redis in production), not in the scheduler's memory, so a restarted
or retried publish cannot double count.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp
import redis.asyncio as redis
import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from reward_distributor.core.exceptions import ExternalServiceError
from reward_distributor.core.types import AirdropResult, ClaimResult, Cycle, SwapResult
from reward_distributor.services.http import request_json


logger = structlog.get_logger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# SET the marker only if absent, and add to the total in the same step
CREDIT_ONCE_SCRIPT = """
if redis.call('SET', KEYS[1], ARGV[1], 'NX') then
    return redis.call('INCRBY', KEYS[2], ARGV[1])
end
return nil
"""


class InMemoryDedupStore:
    """Process-local dedup store (tests and single-run tooling)."""

    def __init__(self):
        self._markers: Dict[str, int] = {}
        self._totals: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def credit_once(self, marker: str, total_key: str, amount: int) -> bool:
        async with self._lock:
            if marker in self._markers:
                return False
            self._markers[marker] = amount
            self._totals[total_key] = self._totals.get(total_key, 0) + amount
            return True

    async def get_total(self, total_key: str) -> int:
        return self._totals.get(total_key, 0)

    async def close(self) -> None:
        pass


class RedisDedupStore:
    """Redis-backed dedup store; survives worker restarts."""

    def __init__(self, url: str, prefix: str = "reward_distributor:"):
        self.url = url
        self.prefix = prefix
        self._client: Optional[Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._client is None:
            pool = redis.ConnectionPool.from_url(
                self.url,
                decode_responses=True,
                max_connections=5,
                retry_on_timeout=True,
            )
            self._client = Redis(connection_pool=pool)
            await self._client.ping()
            logger.info("Redis connection established", prefix=self.prefix)

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def credit_once(self, marker: str, total_key: str, amount: int) -> bool:
        result = await self.client.eval(
            CREDIT_ONCE_SCRIPT, 2, self.prefix + marker, self.prefix + total_key, amount
        )
        return result is not None

    async def get_total(self, total_key: str) -> int:
        value = await self.client.get(self.prefix + total_key)
        return int(value) if value else 0

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class TotalsAccumulator:
    """Cumulative airdrop total, deduplicated by cycle id."""

    TOTAL_KEY = "totals:airdropped"

    def __init__(self, store):
        self.store = store

    async def credit_airdrop(self, cycle_id: str, amount: int) -> bool:
        """Add ``amount`` to the total unless ``cycle_id`` was already credited."""
        return await self.store.credit_once(f"airdrop:{cycle_id}", self.TOTAL_KEY, amount)

    async def total_airdropped(self) -> int:
        return await self.store.get_total(self.TOTAL_KEY)


class OpsRecorder:
    """
    Publishes partial ``{lastClaim, lastSwap, lastAirdrop}`` updates.

    Every failure here is logged and swallowed; distribution never depends
    on the recorder succeeding.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        accumulator: TotalsAccumulator,
        url: str = "",
        secret: str = "",
        timeout: float = 10.0
    ):
        self.session = session
        self.accumulator = accumulator
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.logger = logger.bind(service="ops_recorder")

    async def publish(self, payload: Dict[str, Any]) -> bool:
        """POST ``payload`` to the ops endpoint; returns False on any failure."""
        if not self.url:
            self.logger.debug("Ops endpoint not configured, skipping publish", keys=sorted(payload))
            return False
        try:
            await request_json(
                self.session,
                "POST",
                self.url,
                json_body=payload,
                headers={"x-admin-secret": self.secret},
                timeout=self.timeout
            )
            return True
        except ExternalServiceError as e:
            self.logger.warning("Ops publish failed", keys=sorted(payload), error=e.message)
            return False

    async def record_claim(self, cycle: Cycle, claim: ClaimResult) -> bool:
        return await self.publish({
            "lastClaim": {
                "at": claim.at.isoformat(),
                "amount": claim.amount_moved / LAMPORTS_PER_SOL,
                "lamports": str(claim.amount_moved),
                "tx": claim.reference_id,
                "cycleId": cycle.id,
            }
        })

    async def record_swap(self, cycle: Cycle, swap: SwapResult) -> bool:
        return await self.publish({
            "lastSwap": {
                "at": swap.at.isoformat(),
                "amount": swap.amount_spent / LAMPORTS_PER_SOL,
                "received": str(swap.amount_moved),
                "burned": str(swap.amount_burned),
                "tx": swap.reference_id,
                "cycleId": cycle.id,
            }
        })

    async def record_airdrop(self, cycle: Cycle, airdrop: AirdropResult) -> bool:
        """Credit the cycle's airdrop to the running total once, then publish."""
        total: Optional[int] = None
        try:
            credited = await self.accumulator.credit_airdrop(cycle.id, airdrop.amount_sent)
            total = await self.accumulator.total_airdropped()
            if not credited:
                self.logger.info("Airdrop already credited for cycle", cycle_id=cycle.id)
        except RedisError as e:
            self.logger.warning("Failed to credit airdrop total", cycle_id=cycle.id, error=str(e))

        payload: Dict[str, Any] = {
            "lastAirdrop": {
                "at": airdrop.at.isoformat(),
                "totalSent": str(airdrop.amount_sent),
                "totalSentUi": airdrop.amount_sent_ui,
                "count": airdrop.recipients,
                "failed": airdrop.failed_rows + airdrop.dropped_rows + airdrop.unconfirmed_rows,
                "cycleId": cycle.id,
            }
        }
        if total is not None:
            payload["totals"] = {"totalAirdropped": str(total)}
        return await self.publish(payload)
