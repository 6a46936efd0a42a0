"""
Main entry point for the distribution worker.
Loads configuration, wires the services together and runs the cycle scheduler.
"""

import sys
import signal
import asyncio
from typing import Optional

import aiohttp
import structlog

from reward_distributor.core.config import Settings, load_settings
from reward_distributor.core.exceptions import ConfigurationError
from reward_distributor.core.logging import setup_logging
from reward_distributor.core.types import AllocationMode
from reward_distributor.services.allocation import AllocationPolicy
from reward_distributor.services.fee_claim import FeeClaimService
from reward_distributor.services.ledger_client import LedgerClient
from reward_distributor.services.ops_recorder import (
    InMemoryDedupStore,
    OpsRecorder,
    RedisDedupStore,
    TotalsAccumulator,
)
from reward_distributor.services.swap import SwapService
from .cycle_scheduler import CycleScheduler
from .distribution_cycle import DistributionCycle


logger = structlog.get_logger(__name__)


class DistributorMain:
    """Owns the worker's long-lived resources and the scheduler loop."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.ledger: Optional[LedgerClient] = None
        self.session: Optional[aiohttp.ClientSession] = None
        self.store = None
        self.cycle: Optional[DistributionCycle] = None
        self.scheduler: Optional[CycleScheduler] = None

    async def initialize(self):
        """Create clients and services; raises on anything that cannot start."""
        settings = self.settings
        logger.info("Initializing distribution worker", environment=settings.environment)

        keypair = settings.load_keypair()

        self.ledger = LedgerClient(
            settings.rpc_endpoints,
            commitment=settings.solana_commitment,
            timeout=settings.rpc_timeout,
            max_retries=settings.rpc_max_retries,
            retry_delay=settings.rpc_retry_delay,
            confirm_poll_interval=settings.confirm_poll_interval,
        )
        self.session = aiohttp.ClientSession()

        if settings.redis_url:
            self.store = RedisDedupStore(settings.redis_url, settings.redis_prefix)
            await self.store.connect()
        else:
            logger.warning("REDIS_URL not set, airdrop totals are kept in memory only")
            self.store = InMemoryDedupStore()

        recorder = OpsRecorder(
            self.session,
            TotalsAccumulator(self.store),
            url=settings.ops_url,
            secret=settings.ops_secret,
            timeout=settings.ops_timeout,
        )
        fee_claim = FeeClaimService(
            self.session,
            self.ledger,
            keypair.pubkey(),
            settings.tracked_mint,
            base_url=settings.pumpportal_base,
            api_key=settings.pumpportal_key,
            priority_fee=settings.claim_priority_fee,
            pool=settings.claim_pool,
            settle_seconds=settings.claim_settle_seconds,
        )
        swap = SwapService(
            self.session,
            self.ledger,
            keypair,
            settings.reward_mint,
            base_url=settings.jupiter_base,
            slippage_bps=settings.swap_slippage_bps,
            max_tries=settings.swap_max_tries,
            retry_sleep=settings.swap_retry_sleep,
            confirm_timeout=settings.confirm_timeout_seconds,
        )
        policy = AllocationPolicy(
            mode=AllocationMode(settings.allocation_mode),
            excluded_wallets=frozenset(settings.excluded_wallet_list),
            max_weight=settings.max_holder_balance,
            min_weight=settings.min_holder_balance,
        )

        self.cycle = DistributionCycle(
            self.ledger,
            fee_claim,
            swap,
            recorder,
            keypair,
            settings.tracked_mint,
            settings.reward_mint,
            policy=policy,
            min_claim_lamports=settings.min_claim_lamports,
            swap_spend_bps=settings.swap_spend_bps,
            burn_bps=settings.burn_bps,
            distribute_bps=settings.distribute_bps,
            submitter_options={
                "batch_size_default": settings.batch_size_default,
                "batch_size_max": settings.batch_size_max,
                "grow_after_successes": settings.grow_after_successes,
                "max_in_flight": settings.max_in_flight,
                "min_submit_interval": settings.min_submit_interval,
                "max_attempts": settings.submit_max_attempts,
                "backoff_base": settings.backoff_base_seconds,
                "backoff_max": settings.backoff_max_seconds,
                "confirm_timeout": settings.confirm_timeout_seconds,
            },
            builder_options={
                "compute_unit_limit": settings.compute_unit_limit,
                "priority_fee_micro_lamports": settings.priority_fee_micro_lamports,
            },
            confirm_timeout=settings.confirm_timeout_seconds,
        )

        stages = self.cycle.stages(
            offsets={
                "claim": settings.claim_offset_seconds,
                "swap": settings.swap_offset_seconds,
                "distribute": settings.distribute_offset_seconds,
            },
            timeouts={
                "claim": settings.claim_timeout_seconds,
                "swap": settings.swap_timeout_seconds,
                "distribute": settings.distribute_timeout_seconds,
            },
        )
        self.scheduler = CycleScheduler(
            stages,
            settings.cycle_width_seconds,
            poll_interval=settings.scheduler_poll_interval,
        )

        logger.info(
            "Distribution worker initialized",
            wallet=str(keypair.pubkey()),
            tracked_mint=settings.tracked_mint,
            reward_mint=settings.reward_mint,
            rpc_endpoints=len(settings.rpc_endpoints),
            cycle_width=settings.cycle_width_seconds
        )

    async def start(self):
        health = await self.ledger.health_check()
        for url, status in health["endpoints"].items():
            if status["healthy"]:
                logger.info("RPC endpoint reachable", endpoint=url, response_time=status["response_time"])
            else:
                logger.warning("RPC endpoint unreachable at startup", endpoint=url, error=status["error"])
        await self.scheduler.run()

    def request_stop(self):
        if self.scheduler:
            self.scheduler.stop()

    async def shutdown(self):
        """Release network resources."""
        if self.session is not None:
            await self.session.close()
        if self.store is not None:
            await self.store.close()
        if self.ledger is not None:
            await self.ledger.close()
        logger.info("Distribution worker stopped")


async def main(settings: Optional[Settings] = None) -> int:
    """Run the worker until a shutdown signal; returns the process exit code."""
    try:
        settings = settings or load_settings()
    except ConfigurationError as e:
        logger.error("Configuration error, refusing to start", error=e.message, **e.details)
        return 1

    setup_logging(settings)
    worker = DistributorMain(settings)

    # Setup signal handlers
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        worker.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.initialize()
        await worker.start()
    except ConfigurationError as e:
        logger.error("Configuration error, refusing to start", error=e.message, **e.details)
        return 1
    except Exception as e:
        logger.error("Distribution worker failed", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        await worker.shutdown()
    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
