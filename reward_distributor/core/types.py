"""
Types shared by the distribution cycle components.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Set, Tuple

from .exceptions import ErrorKind


class SchedulerState(Enum):
    """State of the cycle scheduler."""
    IDLE = "idle"
    CLAIMING = "claiming"
    SWAPPING = "swapping"
    DISTRIBUTING = "distributing"
    COOLDOWN = "cooldown"


class AllocationMode(Enum):
    """How holder weights translate into shares."""
    PROPORTIONAL = "proportional"
    EQUAL = "equal"


@dataclass(frozen=True)
class HolderSnapshot:
    """A holder of the tracked token and its weight in base units."""
    wallet: str
    weight: int


@dataclass(frozen=True)
class AllocationRow:
    """Amount of reward token (base units) owed to one wallet."""
    wallet: str
    amount: int


@dataclass
class RetryState:
    """Retry bookkeeping for a single batch."""
    attempts: int = 0
    last_error: Optional[ErrorKind] = None


@dataclass
class SubmissionBatch:
    """Rows bundled into one transaction."""
    rows: Tuple[AllocationRow, ...]
    retry: RetryState = field(default_factory=RetryState)

    @property
    def size(self) -> int:
        return len(self.rows)

    @property
    def amount(self) -> int:
        return sum(row.amount for row in self.rows)


@dataclass
class ClaimResult:
    """Outcome of a creator-fee claim."""
    at: datetime
    amount_moved: int  # lamports
    reference_id: Optional[str] = None


@dataclass
class SwapResult:
    """Outcome of converting claimed lamports into the reward token."""
    at: datetime
    amount_moved: int  # reward token base units received
    reference_id: Optional[str] = None
    amount_spent: int = 0  # lamports
    amount_burned: int = 0
    burn_reference_id: Optional[str] = None


@dataclass
class SubmissionReport:
    """Outcome of pushing all allocation rows to the ledger."""
    delivered: List[AllocationRow] = field(default_factory=list)
    failed: List[AllocationRow] = field(default_factory=list)
    dropped: List[AllocationRow] = field(default_factory=list)
    unconfirmed: List[AllocationRow] = field(default_factory=list)
    signatures: List[str] = field(default_factory=list)
    transactions_sent: int = 0
    rounds: int = 0
    final_batch_size: int = 0

    @property
    def amount_delivered(self) -> int:
        return sum(row.amount for row in self.delivered)

    @property
    def accounted_rows(self) -> int:
        return len(self.delivered) + len(self.failed) + len(self.dropped) + len(self.unconfirmed)


@dataclass
class AirdropResult:
    """Outcome of a distribution stage."""
    at: datetime
    cycle_id: str
    pool: int
    recipients: int
    amount_sent: int
    decimals: int
    signatures: List[str] = field(default_factory=list)
    failed_rows: int = 0
    dropped_rows: int = 0
    unconfirmed_rows: int = 0

    @property
    def amount_sent_ui(self) -> float:
        """Display-only amount; never used for accounting."""
        return self.amount_sent / (10 ** self.decimals)


@dataclass
class Cycle:
    """One fixed-width window of the distribution grid."""
    id: str
    index: int
    window_start: float
    window_end: float
    stages_fired: Set[str] = field(default_factory=set)
    claim: Optional[ClaimResult] = None
    swap: Optional[SwapResult] = None
    airdrop: Optional[AirdropResult] = None

    @classmethod
    def for_time(cls, now: float, width: int) -> "Cycle":
        index = int(now // width)
        return cls(
            id=str(index),
            index=index,
            window_start=float(index * width),
            window_end=float((index + 1) * width),
        )

    def contains(self, now: float) -> bool:
        return self.window_start <= now < self.window_end

    def idempotency_key(self, action: str) -> str:
        return f"{action}:{self.id}"
