"""
Test the claim / swap / distribute stage handlers end to end against fakes.
"""

from datetime import datetime, timezone

import pytest
from solders.keypair import Keypair
from spl.token.constants import TOKEN_PROGRAM_ID

from reward_distributor.core.exceptions import LedgerError
from reward_distributor.core.types import ClaimResult, SchedulerState, SwapResult
from reward_distributor.scheduler.distribution_cycle import DistributionCycle
from reward_distributor.services.allocation import AllocationPolicy
from reward_distributor.services.ledger_client import MintInfo

from conftest import FakeLedger


NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeFeeClaim:
    def __init__(self, lamports):
        self.lamports = lamports

    async def claim(self, cycle):
        return ClaimResult(at=NOW, amount_moved=self.lamports, reference_id="claim-sig")


class FakeSwap:
    def __init__(self, received):
        self.received = received
        self.spent = []

    async def swap(self, cycle, lamports):
        self.spent.append(lamports)
        return SwapResult(at=NOW, amount_moved=self.received, reference_id="swap-sig", amount_spent=lamports)


class FakeRecorder:
    def __init__(self):
        self.claims = []
        self.swaps = []
        self.airdrops = []

    async def record_claim(self, cycle, claim):
        self.claims.append((cycle.id, claim))

    async def record_swap(self, cycle, swap):
        self.swaps.append((cycle.id, swap))

    async def record_airdrop(self, cycle, airdrop):
        self.airdrops.append((cycle.id, airdrop))


def wallets(count):
    return [str(Keypair().pubkey()) for _ in range(count)]


def make_cycle(ledger, keypair=None, claim_lamports=1_000_000, received=500, **options):
    return DistributionCycle(
        ledger,
        FakeFeeClaim(claim_lamports),
        options.pop("swap", FakeSwap(received)),
        options.pop("recorder", FakeRecorder()),
        keypair or Keypair(),
        tracked_mint=str(Keypair().pubkey()),
        reward_mint=str(Keypair().pubkey()),
        submitter_options={"min_submit_interval": 0.0},
        **options
    )


@pytest.fixture
def mint():
    return MintInfo(address=str(Keypair().pubkey()), decimals=6, program_id=TOKEN_PROGRAM_ID)


@pytest.mark.asyncio
async def test_claim_stage_records_result(cycle):
    recorder = FakeRecorder()
    stages = make_cycle(FakeLedger(), recorder=recorder)

    result = await stages.claim_stage(cycle)

    assert cycle.claim is result
    assert recorder.claims == [(cycle.id, result)]


@pytest.mark.asyncio
async def test_swap_spends_share_of_claim(cycle):
    swap = FakeSwap(received=123)
    stages = make_cycle(FakeLedger(), swap=swap, swap_spend_bps=7_000)
    cycle.claim = ClaimResult(at=NOW, amount_moved=1_000_000)

    result = await stages.swap_stage(cycle)

    assert swap.spent == [700_000]
    assert cycle.swap is result
    assert result.amount_burned == 0


@pytest.mark.asyncio
async def test_swap_skipped_below_threshold(cycle):
    swap = FakeSwap(received=1)
    recorder = FakeRecorder()
    stages = make_cycle(FakeLedger(), swap=swap, recorder=recorder, min_claim_lamports=5_000)
    cycle.claim = ClaimResult(at=NOW, amount_moved=4_999)

    assert await stages.swap_stage(cycle) is None
    assert swap.spent == []
    assert recorder.swaps == []


@pytest.mark.asyncio
async def test_swap_skipped_without_claim(cycle):
    swap = FakeSwap(received=1)
    stages = make_cycle(FakeLedger(), swap=swap)

    assert await stages.swap_stage(cycle) is None
    assert swap.spent == []


@pytest.mark.asyncio
async def test_swap_burns_share_of_received(cycle, mint):
    ledger = FakeLedger(mint_info=mint)
    stages = make_cycle(ledger, received=1_000, burn_bps=2_500)
    cycle.claim = ClaimResult(at=NOW, amount_moved=1_000_000)

    result = await stages.swap_stage(cycle)

    assert result.amount_burned == 250
    assert result.burn_reference_id == "sig1"
    assert len(ledger.sent) == 1


@pytest.mark.asyncio
async def test_failed_burn_keeps_swap(cycle, mint):
    ledger = FakeLedger(mint_info=mint, send_errors=[LedgerError("insufficient funds")])
    recorder = FakeRecorder()
    stages = make_cycle(ledger, recorder=recorder, received=1_000, burn_bps=5_000)
    cycle.claim = ClaimResult(at=NOW, amount_moved=1_000_000)

    result = await stages.swap_stage(cycle)

    assert result.amount_moved == 1_000
    assert result.amount_burned == 0
    assert recorder.swaps == [(cycle.id, result)]


@pytest.mark.asyncio
async def test_distribute_pays_holders_pro_rata(cycle, mint):
    keypair = Keypair()
    a, b, c = sorted(wallets(3))
    holders = {a: 100, b: 300, c: 600, str(keypair.pubkey()): 10_000}
    ledger = FakeLedger(mint_info=mint, holders=holders, token_balances=[1_000])
    recorder = FakeRecorder()
    stages = make_cycle(ledger, keypair=keypair, recorder=recorder)

    airdrop = await stages.distribute_stage(cycle)

    assert airdrop.pool == 1_000
    assert airdrop.amount_sent == 1_000
    assert airdrop.recipients == 3
    assert airdrop.decimals == 6
    assert airdrop.failed_rows == airdrop.dropped_rows == airdrop.unconfirmed_rows == 0
    assert cycle.airdrop is airdrop
    assert recorder.airdrops == [(cycle.id, airdrop)]
    assert len(ledger.sent) == 1


@pytest.mark.asyncio
async def test_distribute_respects_distribute_bps_and_policy(cycle, mint):
    excluded, a, b = wallets(3)
    ledger = FakeLedger(mint_info=mint, holders={excluded: 50, a: 1, b: 1}, token_balances=[1_001])
    stages = make_cycle(
        ledger,
        distribute_bps=5_000,
        policy=AllocationPolicy(excluded_wallets=frozenset({excluded})),
    )

    airdrop = await stages.distribute_stage(cycle)

    assert airdrop.pool == 500
    assert airdrop.amount_sent == 500
    assert airdrop.recipients == 2


@pytest.mark.asyncio
async def test_distribute_with_empty_pool_sends_nothing(cycle, mint):
    ledger = FakeLedger(mint_info=mint, holders={wallets(1)[0]: 10}, token_balances=[0])
    recorder = FakeRecorder()
    stages = make_cycle(ledger, recorder=recorder)

    assert await stages.distribute_stage(cycle) is None
    assert ledger.sent == []
    assert recorder.airdrops == []


@pytest.mark.asyncio
async def test_submitter_is_reused_across_cycles(cycle, mint):
    ledger = FakeLedger(mint_info=mint)
    stages = make_cycle(ledger)

    await stages.initialize()
    submitter = stages.submitter
    await stages.initialize()

    assert stages.submitter is submitter
    assert stages.get_status()["ready"] is True


def test_stage_definitions():
    stages = make_cycle(FakeLedger()).stages(
        offsets={"claim": 0, "swap": 30, "distribute": 55},
        timeouts={"claim": 25, "swap": 25, "distribute": 240},
    )

    assert [(s.name, s.offset, s.timeout, s.state) for s in stages] == [
        ("claim", 0, 25, SchedulerState.CLAIMING),
        ("swap", 30, 25, SchedulerState.SWAPPING),
        ("distribute", 55, 240, SchedulerState.DISTRIBUTING),
    ]
