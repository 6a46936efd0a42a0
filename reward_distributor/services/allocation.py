"""
Largest-remainder allocation of a reward pool across weighted holders.

All arithmetic is done on Python integers, so the output always sums to the
pool exactly and is reproducible for the same input.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional

import structlog

from reward_distributor.core.types import AllocationMode, AllocationRow, HolderSnapshot


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AllocationPolicy:
    """Eligibility and weighting rules applied before apportionment."""
    mode: AllocationMode = AllocationMode.PROPORTIONAL
    excluded_wallets: FrozenSet[str] = field(default_factory=frozenset)
    max_weight: Optional[int] = None  # holders above this are excluded (whale cap)
    min_weight: int = 0

    def is_eligible(self, holder: HolderSnapshot) -> bool:
        if holder.weight <= 0 or holder.weight < self.min_weight:
            return False
        if holder.wallet in self.excluded_wallets:
            return False
        if self.max_weight is not None and holder.weight > self.max_weight:
            return False
        return True


def eligible_weights(
    holders: Iterable[HolderSnapshot],
    policy: AllocationPolicy
) -> Dict[str, int]:
    """Merge duplicate wallets, then apply the policy's filters and weighting."""
    merged: Dict[str, int] = {}
    for holder in holders:
        if holder.weight < 0:
            raise ValueError(f"Negative weight for {holder.wallet}: {holder.weight}")
        merged[holder.wallet] = merged.get(holder.wallet, 0) + holder.weight

    weights = {}
    for wallet, weight in merged.items():
        if not policy.is_eligible(HolderSnapshot(wallet=wallet, weight=weight)):
            continue
        weights[wallet] = 1 if policy.mode == AllocationMode.EQUAL else weight
    return weights


def allocate(
    pool: int,
    holders: Iterable[HolderSnapshot],
    policy: Optional[AllocationPolicy] = None
) -> List[AllocationRow]:
    """
    Split ``pool`` base units across holders by the largest-remainder method.

    Every row gets ``floor(pool * weight / total)``; the units lost to
    flooring are handed out one each to the largest remainders, ties going
    to the lowest wallet identifier. Rows that end at zero are omitted.

    Args:
        pool: Amount to distribute, in base units
        holders: Snapshot of (wallet, weight) pairs
        policy: Eligibility / weighting rules (defaults to plain proportional)

    Returns:
        Rows sorted by wallet whose amounts sum to ``pool`` exactly, or an
        empty list when there is nothing to distribute.
    """
    policy = policy or AllocationPolicy()
    weights = eligible_weights(holders, policy)
    total = sum(weights.values())

    if pool <= 0 or total == 0:
        logger.info(
            "Nothing to allocate",
            pool=pool,
            total_weight=total,
            eligible_holders=len(weights)
        )
        return []

    amounts: Dict[str, int] = {}
    remainders: Dict[str, int] = {}
    for wallet, weight in weights.items():
        amounts[wallet], remainders[wallet] = divmod(pool * weight, total)

    shortfall = pool - sum(amounts.values())
    # shortfall < number of holders, since each remainder is < total
    by_remainder = sorted(weights, key=lambda w: (-remainders[w], w))
    for wallet in by_remainder[:shortfall]:
        amounts[wallet] += 1

    rows = [
        AllocationRow(wallet=wallet, amount=amounts[wallet])
        for wallet in sorted(amounts)
        if amounts[wallet] > 0
    ]

    logger.debug(
        "Allocation computed",
        pool=pool,
        total_weight=total,
        eligible_holders=len(weights),
        recipients=len(rows),
        remainder_units=shortfall
    )
    return rows
