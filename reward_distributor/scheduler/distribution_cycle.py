"""
Distribution cycle: the claim, swap and distribute stage handlers.

Each handler works on the ``Cycle`` it is given and stores its result on it,
so later stages of the same cycle read what earlier ones produced:

1. claim       - collect creator fees, measure the lamports that arrived
2. swap        - spend part of the claim on the reward token, optionally burn
3. distribute  - snapshot holders, allocate the reward balance, submit
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from solders.keypair import Keypair

from reward_distributor.core.exceptions import LedgerError
from reward_distributor.core.types import (
    AirdropResult,
    ClaimResult,
    Cycle,
    HolderSnapshot,
    SchedulerState,
    SwapResult,
)
from reward_distributor.services.allocation import AllocationPolicy, allocate
from reward_distributor.services.batch_submitter import BatchSubmitter
from reward_distributor.services.transaction_builder import TransferBuilder
from reward_distributor.scheduler.cycle_scheduler import Stage


logger = structlog.get_logger(__name__)

BPS_DENOMINATOR = 10_000


class DistributionCycle:
    """
    Runs the three stages of a distribution cycle.

    The transfer builder and batch submitter are created on first use, once
    the reward mint's decimals and token program are known. The submitter is
    kept for the life of the process so the batch width it has learned
    carries over from one cycle to the next.
    """

    def __init__(
        self,
        ledger,
        fee_claim,
        swap,
        recorder,
        keypair: Keypair,
        tracked_mint: str,
        reward_mint: str,
        policy: Optional[AllocationPolicy] = None,
        min_claim_lamports: int = 1_000,
        swap_spend_bps: int = 7_000,
        burn_bps: int = 0,
        distribute_bps: int = BPS_DENOMINATOR,
        submitter_options: Optional[Dict[str, Any]] = None,
        builder_options: Optional[Dict[str, Any]] = None,
        confirm_timeout: float = 90.0
    ):
        self.ledger = ledger
        self.fee_claim = fee_claim
        self.swap = swap
        self.recorder = recorder
        self.keypair = keypair
        self.wallet = keypair.pubkey()
        self.tracked_mint = tracked_mint
        self.reward_mint = reward_mint
        self.min_claim_lamports = min_claim_lamports
        self.swap_spend_bps = swap_spend_bps
        self.burn_bps = burn_bps
        self.distribute_bps = distribute_bps
        self.submitter_options = submitter_options or {}
        self.builder_options = builder_options or {}
        self.confirm_timeout = confirm_timeout

        # The distribution wallet never pays itself
        policy = policy or AllocationPolicy()
        self.policy = AllocationPolicy(
            mode=policy.mode,
            excluded_wallets=policy.excluded_wallets | {str(self.wallet)},
            max_weight=policy.max_weight,
            min_weight=policy.min_weight,
        )

        self.builder: Optional[TransferBuilder] = None
        self.submitter: Optional[BatchSubmitter] = None
        self.logger = logger.bind(service="distribution_cycle")

    async def initialize(self):
        """Resolve the reward mint and build the transfer pipeline."""
        if self.submitter is not None:
            return
        mint = await self.ledger.get_mint_info(self.reward_mint)
        self.builder = TransferBuilder(self.keypair, mint, **self.builder_options)
        self.submitter = BatchSubmitter(self.ledger, self.builder, **self.submitter_options)
        self.logger.info(
            "Distribution pipeline ready",
            reward_mint=self.reward_mint,
            decimals=mint.decimals,
            token_program=str(mint.program_id),
            batch_size=self.submitter.batch_size
        )

    def stages(
        self,
        offsets: Dict[str, float],
        timeouts: Dict[str, float]
    ) -> List[Stage]:
        """Stage definitions for the cycle scheduler."""
        return [
            Stage("claim", offsets["claim"], self.claim_stage, timeouts["claim"], SchedulerState.CLAIMING),
            Stage("swap", offsets["swap"], self.swap_stage, timeouts["swap"], SchedulerState.SWAPPING),
            Stage("distribute", offsets["distribute"], self.distribute_stage, timeouts["distribute"], SchedulerState.DISTRIBUTING),
        ]

    async def claim_stage(self, cycle: Cycle) -> ClaimResult:
        result = await self.fee_claim.claim(cycle)
        cycle.claim = result
        await self.recorder.record_claim(cycle, result)
        return result

    async def swap_stage(self, cycle: Cycle) -> Optional[SwapResult]:
        """Spend ``swap_spend_bps`` of this cycle's claim on the reward token."""
        claimed = cycle.claim.amount_moved if cycle.claim else 0
        if claimed < self.min_claim_lamports:
            self.logger.info(
                "Claim below threshold, skipping swap",
                cycle_id=cycle.id,
                claimed=claimed,
                threshold=self.min_claim_lamports
            )
            return None

        spend = claimed * self.swap_spend_bps // BPS_DENOMINATOR
        if spend <= 0:
            self.logger.info("Nothing to spend on swap", cycle_id=cycle.id, claimed=claimed)
            return None

        result = await self.swap.swap(cycle, spend)
        if self.burn_bps and result.amount_moved > 0:
            await self._burn(cycle, result)

        cycle.swap = result
        await self.recorder.record_swap(cycle, result)
        return result

    async def _burn(self, cycle: Cycle, result: SwapResult):
        """Burn ``burn_bps`` of the swapped tokens; a failed burn keeps the swap."""
        amount = result.amount_moved * self.burn_bps // BPS_DENOMINATOR
        if amount <= 0:
            return
        await self.initialize()
        try:
            blockhash, last_valid = await self.ledger.get_latest_blockhash()
            transaction = self.builder.build_burn(amount, blockhash)
            signature = await self.ledger.send_transaction(transaction)
            await self.ledger.confirm_transaction(signature, last_valid, timeout=self.confirm_timeout)
        except LedgerError as e:
            self.logger.error("🔥 Burn failed", cycle_id=cycle.id, amount=amount, code=e.code, error=e.message)
            return

        result.amount_burned = amount
        result.burn_reference_id = signature
        self.logger.info("🔥 Burned reward tokens", cycle_id=cycle.id, amount=amount, signature=signature)

    async def distribute_stage(self, cycle: Cycle) -> Optional[AirdropResult]:
        """
        Airdrop the reward balance to holders of the tracked token.

        The pool is ``distribute_bps`` of the wallet's current reward balance,
        so tokens left over from an earlier failed cycle are picked up here
        and nothing already paid out can be paid again.
        """
        await self.initialize()

        holders = await self.ledger.get_token_holders(self.tracked_mint)
        snapshot = [HolderSnapshot(wallet=wallet, weight=weight) for wallet, weight in holders.items()]

        balance = await self.ledger.get_token_balance(self.wallet, self.reward_mint)
        pool = balance * self.distribute_bps // BPS_DENOMINATOR

        rows = allocate(pool, snapshot, self.policy)
        if not rows:
            self.logger.info(
                "No airdrop this cycle",
                cycle_id=cycle.id,
                pool=pool,
                holders=len(snapshot)
            )
            return None

        self.logger.info(
            "🪂 Starting airdrop",
            cycle_id=cycle.id,
            pool=pool,
            holders=len(snapshot),
            recipients=len(rows)
        )
        report = await self.submitter.submit_all(rows)

        airdrop = AirdropResult(
            at=datetime.now(timezone.utc),
            cycle_id=cycle.id,
            pool=pool,
            recipients=len(report.delivered),
            amount_sent=report.amount_delivered,
            decimals=self.builder.mint.decimals,
            signatures=list(report.signatures),
            failed_rows=len(report.failed),
            dropped_rows=len(report.dropped),
            unconfirmed_rows=len(report.unconfirmed),
        )
        cycle.airdrop = airdrop
        await self.recorder.record_airdrop(cycle, airdrop)

        self.logger.info(
            "✅ Airdrop finished",
            cycle_id=cycle.id,
            recipients=airdrop.recipients,
            amount_sent=airdrop.amount_sent,
            failed=airdrop.failed_rows,
            dropped=airdrop.dropped_rows,
            unconfirmed=airdrop.unconfirmed_rows
        )
        return airdrop

    def get_status(self) -> Dict[str, Any]:
        return {
            "tracked_mint": self.tracked_mint,
            "reward_mint": self.reward_mint,
            "wallet": str(self.wallet),
            "ready": self.submitter is not None,
            "batch_size": self.submitter.batch_size if self.submitter else None,
        }
